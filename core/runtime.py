"""
Gatekeeper Runtime — builds the shared context and owns its lifecycle.

Start order:   connections → queue → reconciler → sentiment fan-out
Stop order:    reconciler timer → fan-out subscription → queue → Telegram → connections

Run standalone:
    python -m core.runtime
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Any, Optional

from dotenv import load_dotenv

from channels.telegram import TelegramClient
from config.settings import Settings, get_settings
from core.reconciler import MembershipReconciler
from core.sentiment import SentimentFanout
from database.connection import ConnectionManager
from database.permissions import PermissionStore
from job_queue.balance_checks import BalanceCheckQueue, create_balance_check_queue

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class GatekeeperRuntime:
    """Constructs every component explicitly and passes the shared connections down."""

    def __init__(
        self,
        settings: Settings = None,
        connections: ConnectionManager = None,
        platform: TelegramClient = None,
        queue: BalanceCheckQueue = None,
    ):
        self.settings = settings or get_settings()
        self.connections = connections or ConnectionManager(
            self.settings.redis.url,
            connect_attempts=self.settings.redis.connect_attempts,
        )
        tg = self.settings.telegram
        self.platform = platform or TelegramClient(
            tg.bot_token, api_base_url=tg.api_base_url, timeout=tg.request_timeout,
        )
        self.queue = queue or create_balance_check_queue(self.settings.queue, self.connections.commands)
        self.store = PermissionStore(self.connections.commands, key_pattern=self.settings.reconciler.key_pattern)
        self.reconciler = MembershipReconciler(
            self.store,
            self.queue,
            self.platform,
            chat_id=self.settings.reconciler.chat_id,
            interval_seconds=self.settings.reconciler.interval_seconds,
        )
        self.fanout = SentimentFanout(
            self.connections,
            self.platform,
            chat_id=self.settings.sentiment.chat_id,
            channel=self.settings.sentiment.channel,
            max_topics=self.settings.sentiment.max_topics,
        )
        self._started = False
        self._stopped = False
        self._shutdown = asyncio.Event()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if not self.platform.configured:
            logger.warning("telegram_token_missing", setting="TELEGRAM_BOT_TOKEN")
        await self.connections.connect()
        await self.queue.connect()
        await self.reconciler.start()
        await self.fanout.start()
        logger.info("gatekeeper_started",
                    app=self.settings.app_name,
                    queue_backend=type(self.queue).__name__)

    async def stop(self) -> None:
        """Ordered, idempotent shutdown. In-flight tick work is allowed to finish."""
        if self._stopped:
            return
        self._stopped = True
        await self.reconciler.stop()
        await self.fanout.stop()
        await self.queue.close()
        await self.platform.close()
        await self.connections.close()
        self._shutdown.set()
        logger.info("gatekeeper_stopped")

    async def health(self) -> dict[str, Any]:
        last = self.reconciler.last_result
        redis = await self.connections.health()
        # subscriber state comes from the fan-out; the subscriber connection is never pinged
        redis["subscriber"] = self.fanout.subscribed
        return {
            "redis": redis,
            "reconciler": {
                "enabled": bool(self.reconciler.chat_id),
                "in_flight": self.reconciler.in_flight,
                "last_result": last.to_dict() if last else None,
            },
            "sentiment": {
                "subscribed": self.fanout.subscribed,
                "destination": self.fanout.destination,
                "delivered": self.fanout.delivered,
                "dropped": self.fanout.dropped,
            },
        }

    def request_shutdown(self, signame: str = "") -> None:
        logger.info("shutdown_signal_received", signal=signame)
        self._shutdown.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # e.g. not on the main thread
                logger.debug("signal_handler_unavailable", signal=sig.name)

    async def run_forever(self) -> None:
        """Start, block until a termination signal, then shut down gracefully."""
        self.install_signal_handlers()
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()


def main() -> None:
    load_dotenv()
    asyncio.run(GatekeeperRuntime().run_forever())


if __name__ == "__main__":
    main()
