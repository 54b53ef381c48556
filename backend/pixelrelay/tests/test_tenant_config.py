"""Tests for the tenant configuration gateway.

WHAT: Datastore probe and stored-credential decryption
WHY: The probe runs in a worker thread and must not touch the request
     Session; a bad stored token must degrade to "no credentials"
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from pixelrelay import security
from pixelrelay.services import tenant_config
from pixelrelay.services.tenant_config import TenantConfigGateway

from conftest import CAPI_ACCESS_TOKEN


class TestProbe:
    def test_probe_uses_own_connection(self, test_db_engine):
        session = MagicMock()
        session.get_bind.return_value = test_db_engine
        gateway = TenantConfigGateway(session)

        gateway.probe()

        session.execute.assert_not_called()
        session.connection.assert_not_called()

    def test_probe_raises_when_database_unreachable(self):
        engine = create_engine("sqlite:////nonexistent-dir/pixelrelay.db")
        session = MagicMock()
        session.get_bind.return_value = engine

        with pytest.raises(OperationalError):
            TenantConfigGateway(session).probe()

        session.execute.assert_not_called()


class TestForwardingConfig:
    def test_decryptor_bound_at_import(self):
        assert tenant_config.decrypt_secret is security.decrypt_secret

    def test_round_trips_stored_token(self, test_db_session, forwarding_app):
        config = TenantConfigGateway(test_db_session).get_forwarding_config(forwarding_app.id)

        assert config.access_token == CAPI_ACCESS_TOKEN
        assert config.pixel_id == "123456789"

    def test_undecryptable_token_becomes_none(self, test_db_session, test_app_record, make_app_settings):
        make_app_settings(test_app_record, forwarding=True, meta_access_token_enc="garbage")

        config = TenantConfigGateway(test_db_session).get_forwarding_config(test_app_record.id)

        assert config.access_token is None
        assert config.forwarding_enabled is True

    def test_no_settings_row(self, test_db_session, test_app_record):
        assert TenantConfigGateway(test_db_session).get_forwarding_config(test_app_record.id) is None
