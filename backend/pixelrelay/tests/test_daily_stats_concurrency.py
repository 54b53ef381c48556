"""Concurrency tests for session stitching and daily rollups.

WHAT: Many threads push events for the same app, day and session at once
WHY: Counters must be exact under concurrency; a read-then-write rollup
     would lose increments here and a naive session insert would duplicate
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pixelrelay.database import Base
from pixelrelay.models import AnalyticsSession, App, DailyStats, Shop, TrackedEvent
from pixelrelay.services.ingestion_pipeline import ClientContext, InboundEvent, IngestionPipeline
from pixelrelay.services.tenant_config import TenantConfigGateway
from conftest import FakeForwarder, FakeGeoResolver

WORKERS = 8
EVENTS_PER_WORKER = 5


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite so every thread gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = SessionLocal()
    shop = Shop(shop_domain="mystore.myshopify.com", created_at=datetime.utcnow())
    db.add(shop)
    db.flush()
    db.add(App(app_id="pixel_1", name="My Store Pixel", shop_id=shop.id, created_at=datetime.utcnow()))
    db.commit()
    db.close()

    yield SessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def _run_concurrently(session_factory, make_event):
    barrier = threading.Barrier(WORKERS)

    def worker(worker_index):
        db = session_factory()
        try:
            gateway = TenantConfigGateway(db)
            pipeline = IngestionPipeline(
                db=db,
                gateway=gateway,
                geo_resolver=FakeGeoResolver(),
                forwarder=FakeForwarder(),
            )
            app = gateway.get_tenant_by_public_id("pixel_1")
            client = ClientContext(ip="203.0.113.7", user_agent="Mozilla/5.0 (Windows NT 10.0) Chrome/120.0")
            barrier.wait()

            results = []
            for i in range(EVENTS_PER_WORKER):
                results.append(asyncio.run(pipeline.process(app, make_event(worker_index, i), client)))
            return results
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=WORKERS) as executor:
        batches = list(executor.map(worker, range(WORKERS)))
    return [result for batch in batches for result in batch]


def test_shared_session_created_once_and_counts_every_pageview(file_session_factory):
    results = _run_concurrently(
        file_session_factory,
        lambda w, i: InboundEvent(event_name="pageview", session_id="shared-session"),
    )
    total = WORKERS * EVENTS_PER_WORKER

    assert sum(1 for r in results if r.session_created) == 1

    db = file_session_factory()
    try:
        assert db.query(TrackedEvent).count() == total

        session = db.query(AnalyticsSession).one()
        assert session.pageviews == total

        stats = db.query(DailyStats).one()
        assert stats.pageviews == total
        assert stats.sessions == 1
        assert stats.unique_users == 1
    finally:
        db.close()


def test_distinct_sessions_and_revenue_add_up(file_session_factory):
    results = _run_concurrently(
        file_session_factory,
        lambda w, i: InboundEvent(event_name="purchase", session_id=f"s-{w}-{i}", value=10.25, currency="USD"),
    )
    total = WORKERS * EVENTS_PER_WORKER

    assert all(r.session_created for r in results)

    db = file_session_factory()
    try:
        assert db.query(AnalyticsSession).count() == total
        # Purchases are not page views
        assert all(s.pageviews == 0 for s in db.query(AnalyticsSession).all())

        stats = db.query(DailyStats).one()
        assert stats.purchases == total
        assert stats.sessions == total
        assert stats.pageviews == 0
        assert Decimal(str(stats.revenue)) == Decimal("10.25") * total
    finally:
        db.close()
