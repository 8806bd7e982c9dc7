"""
Tests for the admin API.

The application runs in-process over httpx's ASGI transport with a
service registry wired to the test database and a paper broker.
"""

from datetime import datetime, timedelta

import httpx
import pytest

from fotrader.brokers.paper import PaperBroker
from fotrader.db.models import Order, Signal
from fotrader.db.session import set_database
from fotrader.main import ServiceRegistry, create_application
from tests.conftest import IST


API = "/api/v1"


@pytest.fixture
async def registry(db, mock_sink, calendar):
    registry = ServiceRegistry()
    registry.initialize(db=db, broker=PaperBroker(), sink=mock_sink, calendar=calendar)
    set_database(db)
    yield registry
    registry.scheduler.stop()
    set_database(None)


@pytest.fixture
async def client(registry):
    app = create_application(registry)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def seed_signals(db):
    base = datetime(2025, 10, 15, 10, 0, tzinfo=IST)
    signals = [
        Signal(
            signal_type="BUY", stock=stock, option=f"{stock} 500 CE",
            current_market_price=500, entry_price=500, target_price=504.8, stop_loss=497.6,
            risk_reward_ratio=2.0, generated_at=base + timedelta(minutes=15 * i),
            indicators={"rsi": 60.0},
        )
        for i, stock in enumerate(["AAA", "BBB", "CCC"])
    ]
    async with db.session() as session:
        session.add_all(signals)
    return signals


class TestHealth:
    """Health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get(f"{API}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["services"]["broker"] == "paper"


class TestSignalRoutes:
    """Signal queries and manual generation."""

    @pytest.mark.asyncio
    async def test_list_newest_first(self, client, db):
        await seed_signals(db)

        response = await client.get(f"{API}/signals")

        assert response.status_code == 200
        assert [s["stock"] for s in response.json()] == ["CCC", "BBB", "AAA"]

    @pytest.mark.asyncio
    async def test_list_time_range(self, client, db):
        await seed_signals(db)

        response = await client.get(f"{API}/signals", params={
            "from": "2025-10-15T10:10:00+05:30",
            "to": "2025-10-15T10:30:00+05:30",
        })

        assert [s["stock"] for s in response.json()] == ["BBB"]

    @pytest.mark.asyncio
    async def test_get_signal(self, client, db):
        signals = await seed_signals(db)

        response = await client.get(f"{API}/signals/{signals[0].id}")

        assert response.status_code == 200
        body = response.json()
        assert body["option"] == "AAA 500 CE"
        assert body["indicators"] == {"rsi": 60.0}
        assert body["executed_order"] is False

    @pytest.mark.asyncio
    async def test_unknown_signal(self, client):
        response = await client.get(f"{API}/signals/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_generate_without_market_data(self, client):
        response = await client.post(f"{API}/signals/generate")

        assert response.status_code == 200
        assert response.json() == {"generated": 0, "signals": []}


class TestOrderRoutes:
    """Order queries and manual jobs."""

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, db):
        [signal, *_] = await seed_signals(db)
        order = Order(
            signal_id=signal.id, account_id="ACC1", broker_order_id="B1", status="COMPLETE",
            transaction_type="BUY", exchange="NFO", trading_symbol="AAA25OCT500CE",
            quantity=10, filled_quantity=10, pending_quantity=0, cancelled_quantity=0,
            order_timestamp=signal.generated_at, sl_status="OPEN", target_status="OPEN",
        )
        async with db.session() as session:
            session.add(order)

        listed = await client.get(f"{API}/orders", params={"status": "COMPLETE"})
        assert [o["broker_order_id"] for o in listed.json()] == ["B1"]

        fetched = await client.get(f"{API}/orders/{order.id}")
        assert fetched.status_code == 200
        assert fetched.json()["sl_status"] == "OPEN"

        missing = await client.get(f"{API}/orders/nope")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_manual_jobs(self, client):
        process = await client.post(f"{API}/orders/process")
        assert process.status_code == 200
        assert process.json()["placed"] == 0

        check = await client.post(f"{API}/orders/check-completed")
        assert check.json() == {"closed": 0}

        square_off = await client.post(f"{API}/orders/square-off")
        assert square_off.json() == {"closed": []}


class TestSchedulerRoutes:
    """Scheduler control."""

    @pytest.mark.asyncio
    async def test_status_start_stop(self, client):
        status = await client.get(f"{API}/scheduler/status")
        assert status.json()["running"] is False

        started = await client.post(f"{API}/scheduler/start")
        assert started.json()["running"] is True

        stopped = await client.post(f"{API}/scheduler/stop")
        assert stopped.json()["running"] is False
        assert stopped.json()["jobs_active"] is False


class TestAnalyticsRoutes:
    """Period reports."""

    @pytest.mark.asyncio
    async def test_daily_for_given_day(self, client, registry):
        await registry.analytics.record_signal("BUY", datetime(2025, 10, 15, 11, 0, tzinfo=IST))

        response = await client.get(f"{API}/analytics/daily", params={"day": "2025-10-15"})

        body = response.json()
        assert body["period_key"] == "DAY-2025-10-15"
        assert body["total_signals"] == 1

    @pytest.mark.asyncio
    async def test_weekly_and_monthly_keys(self, client):
        weekly = await client.get(f"{API}/analytics/weekly", params={"day": "2025-10-15"})
        monthly = await client.get(f"{API}/analytics/monthly", params={"day": "2025-10-15"})

        assert weekly.json()["period_key"] == "WEEK-2025-42"
        assert monthly.json()["period_key"] == "MONTH-2025-10"
        assert monthly.json()["total_signals"] == 0


class TestUninitialized:
    """Routes needing services fail cleanly before startup."""

    @pytest.mark.asyncio
    async def test_service_unavailable(self):
        app = create_application(ServiceRegistry())
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get(f"{API}/scheduler/status")
        assert response.status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
