"""
Tests for process lifecycle: connection manager, runtime wiring, shutdown order,
and the operational HTTP surface.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.main import create_app
from config.settings import QueueConfig, ReconcilerConfig, Settings
from core.reconciler import TickResult
from core.runtime import GatekeeperRuntime
from database.connection import ConnectionManager, get_connection_manager, reset_connection_manager
from job_queue.balance_checks import InMemoryBalanceCheckQueue


# ══════════════════════════════════════════════════════════════
#  Connection Manager
# ══════════════════════════════════════════════════════════════

class TestConnectionManager:
    def test_two_independent_connections(self):
        cm = ConnectionManager("redis://localhost:6379")
        assert cm.commands is not cm.subscriber

    @pytest.mark.asyncio
    async def test_connect_failure_is_not_fatal(self):
        cm = ConnectionManager("redis://unreachable:6379", connect_attempts=1)
        cm.commands = AsyncMock()
        cm.commands.ping.side_effect = RedisConnectionError("refused")

        assert await cm.connect() is False
        assert cm.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_success(self):
        cm = ConnectionManager()
        cm.commands = AsyncMock()
        cm.commands.ping.return_value = True
        assert await cm.connect() is True
        assert cm.is_connected is True

    @pytest.mark.asyncio
    async def test_health_never_pings_subscriber(self):
        cm = ConnectionManager()
        cm.commands, cm.subscriber = AsyncMock(), AsyncMock()
        cm.commands.ping.return_value = True
        await cm.connect()

        status = await cm.health()

        assert status["commands"] is True
        assert "subscriber" not in status
        cm.subscriber.ping.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_both_once(self):
        cm = ConnectionManager()
        cm.commands, cm.subscriber = AsyncMock(), AsyncMock()

        await cm.close()
        await cm.close()

        cm.commands.aclose.assert_awaited_once()
        cm.subscriber.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_error_is_logged_not_raised(self):
        cm = ConnectionManager()
        cm.commands, cm.subscriber = AsyncMock(), AsyncMock()
        cm.subscriber.aclose.side_effect = RedisConnectionError("gone")

        await cm.close()
        cm.commands.aclose.assert_awaited_once()

    def test_process_wide_instance(self):
        reset_connection_manager()
        try:
            first = get_connection_manager("redis://localhost:6379")
            assert get_connection_manager() is first
        finally:
            reset_connection_manager()


# ══════════════════════════════════════════════════════════════
#  Runtime
# ══════════════════════════════════════════════════════════════

def make_runtime(chat_id="-100555"):
    settings = Settings(
        queue=QueueConfig(backend="memory"),
        reconciler=ReconcilerConfig(chat_id=chat_id),
    )
    connections = MagicMock()
    connections.connect = AsyncMock(return_value=True)
    connections.close = AsyncMock()
    connections.health = AsyncMock(return_value={"commands": True})
    platform = AsyncMock()
    platform.configured = True
    return GatekeeperRuntime(settings, connections=connections, platform=platform)


class TestRuntime:
    def test_wiring(self):
        rt = make_runtime()
        assert isinstance(rt.queue, InMemoryBalanceCheckQueue)
        assert rt.store._redis is rt.connections.commands
        assert rt.reconciler.chat_id == "-100555"
        assert rt.reconciler.queue is rt.queue
        assert rt.fanout.connections is rt.connections

    @pytest.mark.asyncio
    async def test_shutdown_order(self):
        rt = make_runtime()
        order = []
        rt.reconciler.stop = AsyncMock(side_effect=lambda: order.append("reconciler"))
        rt.fanout.stop = AsyncMock(side_effect=lambda: order.append("fanout"))
        rt.queue.close = AsyncMock(side_effect=lambda: order.append("queue"))
        rt.platform.close = AsyncMock(side_effect=lambda: order.append("platform"))
        rt.connections.close = AsyncMock(side_effect=lambda: order.append("connections"))

        await rt.stop()
        await rt.stop()

        assert order == ["reconciler", "fanout", "queue", "platform", "connections"]

    @pytest.mark.asyncio
    async def test_start_then_signal_shutdown(self):
        rt = make_runtime()
        rt.fanout.start = AsyncMock()
        rt.fanout.stop = AsyncMock()

        await rt.start()
        rt.connections.connect.assert_awaited_once()
        assert rt.reconciler._task is not None

        rt.request_shutdown("SIGTERM")
        await rt.stop()
        assert rt.reconciler._task is None
        rt.connections.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_report(self):
        rt = make_runtime()
        rt.reconciler.last_result = TickResult(scanned=3, deleted=3)
        report = await rt.health()
        assert report["redis"] == {"commands": True, "subscriber": False}
        assert report["reconciler"]["last_result"]["scanned"] == 3
        assert report["sentiment"]["subscribed"] is False


# ══════════════════════════════════════════════════════════════
#  HTTP surface
# ══════════════════════════════════════════════════════════════

class TestApi:
    def _fake_runtime(self):
        rt = MagicMock()
        rt.start = AsyncMock()
        rt.stop = AsyncMock()
        rt.health = AsyncMock(return_value={
            "redis": {"commands": True},
            "reconciler": {"enabled": True, "in_flight": False, "last_result": None},
            "sentiment": {"subscribed": True},
        })
        rt.reconciler.run_tick = AsyncMock(return_value=TickResult(scanned=2, removed=1, deleted=2))
        return rt

    def test_lifespan_starts_and_stops_runtime(self):
        rt = self._fake_runtime()
        with TestClient(create_app(rt)):
            rt.start.assert_awaited_once()
        rt.stop.assert_awaited_once()

    def test_health(self):
        rt = self._fake_runtime()
        with TestClient(create_app(rt)) as client:
            body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["sentiment"]["subscribed"] is True

    def test_health_degraded(self):
        rt = self._fake_runtime()
        rt.health.return_value["redis"]["commands"] = False
        with TestClient(create_app(rt)) as client:
            assert client.get("/health").json()["status"] == "degraded"

    def test_manual_reconcile(self):
        rt = self._fake_runtime()
        with TestClient(create_app(rt)) as client:
            body = client.post("/api/v1/reconcile/run").json()
        assert body["removed"] == 1
        assert body["skipped"] is False
