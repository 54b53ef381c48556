"""Event-name taxonomy: raw event names -> Meta standard events.

WHAT:
    Resolves the name a pixel/webhook reported ("add_to_cart", "pageview",
    "newsletter_signup") to the name forwarded to the Conversions API.

RESOLUTION ORDER (first match wins):
    1. The app's active custom event with exactly that name. Its
       `meta_event_name` overrides the name; its `event_data` JSON template
       becomes the base layer of the forwarded custom data.
    2. DEFAULT_EVENT_MAPPING (case variants of the common e-commerce names).
    3. Pass-through: the raw name is forwarded as-is.

REFERENCES:
    - https://developers.facebook.com/docs/meta-pixel/reference#standard-events
    - pixelrelay/services/tenant_config.py (custom event lookup)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


PAGE_VIEW = "PageView"
VIEW_CONTENT = "ViewContent"
ADD_TO_CART = "AddToCart"
INITIATE_CHECKOUT = "InitiateCheckout"
PURCHASE = "Purchase"
ADD_PAYMENT_INFO = "AddPaymentInfo"
LEAD = "Lead"
CONTACT = "Contact"
SEARCH = "Search"
COMPLETE_REGISTRATION = "CompleteRegistration"


# Canonical merged table. Case-sensitive keys on purpose: unknown casings
# fall through to pass-through rather than being guessed.
DEFAULT_EVENT_MAPPING: Dict[str, str] = {
    # Page tracking
    "pageview": PAGE_VIEW,
    "page_view": PAGE_VIEW,
    "pageView": PAGE_VIEW,
    "PageView": PAGE_VIEW,

    # E-commerce
    "viewContent": VIEW_CONTENT,
    "view_content": VIEW_CONTENT,
    "ViewContent": VIEW_CONTENT,

    "addToCart": ADD_TO_CART,
    "add_to_cart": ADD_TO_CART,
    "AddToCart": ADD_TO_CART,

    "initiateCheckout": INITIATE_CHECKOUT,
    "initiate_checkout": INITIATE_CHECKOUT,
    "InitiateCheckout": INITIATE_CHECKOUT,

    "purchase": PURCHASE,
    "Purchase": PURCHASE,

    "addPaymentInfo": ADD_PAYMENT_INFO,
    "add_payment_info": ADD_PAYMENT_INFO,
    "AddPaymentInfo": ADD_PAYMENT_INFO,

    # Lead generation
    "lead": LEAD,
    "Lead": LEAD,
    "contact": CONTACT,
    "Contact": CONTACT,
    "completeRegistration": COMPLETE_REGISTRATION,
    "complete_registration": COMPLETE_REGISTRATION,
    "CompleteRegistration": COMPLETE_REGISTRATION,

    # Engagement
    "search": SEARCH,
    "Search": SEARCH,
}


MAPPING_CUSTOM = "custom"
MAPPING_DEFAULT = "default"
MAPPING_NONE = "none"


@dataclass
class ResolvedEvent:
    """Result of taxonomy resolution."""
    standard_name: str
    template_data: Dict[str, Any] = field(default_factory=dict)
    mapping_used: str = MAPPING_NONE


def default_standard_name(raw_event_name: Optional[str]) -> Optional[str]:
    """Built-in mapping only (no tenant overrides). None when unmapped."""
    if not raw_event_name:
        return None
    return DEFAULT_EVENT_MAPPING.get(raw_event_name)


def is_pageview(raw_event_name: Optional[str]) -> bool:
    return default_standard_name(raw_event_name) == PAGE_VIEW


def is_purchase(raw_event_name: Optional[str]) -> bool:
    return default_standard_name(raw_event_name) == PURCHASE


def parse_event_template(raw_template: Optional[str], event_name: str = "") -> Dict[str, Any]:
    """Parse a custom event's JSON data template.

    Malformed or non-object templates are logged and ignored; a broken
    template must not stop the event from being forwarded.
    """
    if not raw_template:
        return {}
    try:
        parsed = json.loads(raw_template)
    except (TypeError, ValueError) as e:
        logger.error(f"[TAXONOMY] Invalid event_data template on custom event '{event_name}': {e}")
        return {}
    if not isinstance(parsed, dict):
        logger.error(f"[TAXONOMY] event_data template on custom event '{event_name}' is not a JSON object")
        return {}
    return parsed


class EventTaxonomyMapper:
    """Maps raw event names for one request using the tenant gateway.

    Args:
        gateway: Anything exposing `find_active_custom_event(app_pk, name)`
    """

    def __init__(self, gateway):
        self.gateway = gateway

    def resolve(self, app_pk, raw_event_name: str) -> ResolvedEvent:
        custom_event = self.gateway.find_active_custom_event(app_pk, raw_event_name)

        if custom_event is not None:
            template = parse_event_template(custom_event.event_data, raw_event_name)
            if custom_event.meta_event_name:
                return ResolvedEvent(
                    standard_name=custom_event.meta_event_name,
                    template_data=template,
                    mapping_used=MAPPING_CUSTOM,
                )
            # Active custom event without an override still contributes its template
            default_name = DEFAULT_EVENT_MAPPING.get(raw_event_name)
            return ResolvedEvent(
                standard_name=default_name or raw_event_name,
                template_data=template,
                mapping_used=MAPPING_DEFAULT if default_name else MAPPING_NONE,
            )

        default_name = DEFAULT_EVENT_MAPPING.get(raw_event_name)
        if default_name:
            return ResolvedEvent(standard_name=default_name, mapping_used=MAPPING_DEFAULT)

        return ResolvedEvent(standard_name=raw_event_name, mapping_used=MAPPING_NONE)
