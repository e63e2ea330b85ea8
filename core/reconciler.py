"""
Membership Reconciler — periodic enforcement of token-gated group access.

Each tick:
    1. Skip entirely if no gated group is configured
    2. Enqueue one balance-check job for the group (fire-and-forget)
    3. SCAN every permission record
    4. Per record: look up live membership → decide → remove if needed → delete record

A record is deleted once the removal decision has been attempted, whether or
not the removal call succeeded. The only case that leaves a record in place
is a failed membership lookup, so the next tick retries that user. A removal
that fails on a transient platform error is therefore not retried.

Ticks never overlap: the loop waits for a tick to finish before starting the
interval timer again, and a manual run_tick() during a tick is skipped.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from channels.telegram import TelegramClient
from core.errors import ConfigurationError, ParseError, PlatformApiError, StoreConnectionError
from database.permissions import PermissionStore
from job_queue.balance_checks import BalanceCheckJob, BalanceCheckQueue
from models.schemas import MembershipRecord, PermissionRecord

logger = structlog.get_logger()


class Action(str, Enum):
    EXEMPT = "exempt"                           # owner / administrator
    REMOVE_BOT = "remove_bot"                   # non-admin bot account
    REMOVE_INSUFFICIENT = "remove_insufficient" # balance below threshold
    KEEP = "keep"


def decide_action(record: PermissionRecord, membership: MembershipRecord) -> Action:
    """Role exemption first, then the bot policy, then the stored balance flag."""
    if membership.is_privileged:
        return Action.EXEMPT
    if membership.is_bot_account:
        return Action.REMOVE_BOT
    if not record.has_required_balance:
        return Action.REMOVE_INSUFFICIENT
    return Action.KEEP


@dataclass
class TickResult:
    scanned: int = 0
    removed: int = 0
    exempt: int = 0
    kept: int = 0
    deleted: int = 0
    lookup_failures: int = 0
    removal_failures: int = 0
    parse_failures: int = 0
    store_errors: int = 0
    enqueued: bool = False
    skipped: bool = False
    reason: str = ""
    started_at: str = ""
    finished_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class MembershipReconciler:
    """
    Drives the enforcement loop against one gated group.

    Usage:
        reconciler = MembershipReconciler(store, queue, telegram, chat_id="-100123")
        await reconciler.start()      # background task, first tick after one interval
        result = await reconciler.run_tick()
        await reconciler.stop()       # lets an in-flight tick finish
    """

    def __init__(
        self,
        store: PermissionStore,
        queue: BalanceCheckQueue,
        platform: TelegramClient,
        chat_id: str = "",
        interval_seconds: float = 60,
    ):
        self.store = store
        self.queue = queue
        self.platform = platform
        self.chat_id = str(chat_id or "")
        self.interval_seconds = interval_seconds
        self.last_result: Optional[TickResult] = None
        self._running = False
        self._in_flight = False
        self._warned_unconfigured = False
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def require_chat_id(self) -> str:
        """The gated group id, or ConfigurationError when enforcement is not configured."""
        if not self.chat_id:
            raise ConfigurationError("No gated group configured", setting="TELEGRAM_CHAT_ID")
        return self.chat_id

    async def start(self) -> None:
        """Start the reconciliation loop as a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._wakeup.clear()
        self._task = asyncio.create_task(self._loop(), name="membership_reconciler")
        logger.info("reconciler_started",
                    chat_id=self.chat_id,
                    interval_s=self.interval_seconds)

    async def stop(self) -> None:
        """Stop scheduling ticks; an in-flight tick runs to completion."""
        self._running = False
        self._wakeup.set()
        if self._task and not self._task.done():
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("reconciler_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reconcile_tick_error", error=str(e))

    async def run_tick(self) -> TickResult:
        """Run one reconciliation tick. Returns a skipped result if one is already running."""
        if self._in_flight:
            logger.warning("reconcile_tick_overlap_skipped")
            return TickResult(skipped=True, reason="tick_in_flight")

        try:
            self.require_chat_id()
        except ConfigurationError as e:
            if not self._warned_unconfigured:
                logger.warning("reconciler_disabled", reason=str(e), setting=e.setting)
                self._warned_unconfigured = True
            return TickResult(skipped=True, reason="not_configured")

        self._in_flight = True
        result = TickResult(started_at=_utcnow())
        try:
            await self._enqueue_balance_check(result)

            try:
                keys = await self.store.scan_keys()
            except StoreConnectionError as e:
                result.store_errors += 1
                logger.error("permission_scan_failed", error=str(e))
                return result

            result.scanned = len(keys)
            logger.info("reconcile_tick_started", chat_id=self.chat_id, users=len(keys))

            for key in keys:
                try:
                    await self._process_key(key, result)
                except Exception as e:
                    result.store_errors += 1
                    logger.error("permission_key_error", key=key, error=str(e))
        finally:
            result.finished_at = _utcnow()
            self.last_result = result
            self._in_flight = False

        logger.info("reconcile_tick_complete", **{
            k: v for k, v in result.to_dict().items()
            if k not in ("started_at", "finished_at", "reason", "skipped")
        })
        return result

    async def _enqueue_balance_check(self, result: TickResult) -> None:
        try:
            await self.queue.enqueue(BalanceCheckJob(group_id=self.chat_id))
            result.enqueued = True
        except Exception as e:
            logger.error("balance_check_enqueue_failed", chat_id=self.chat_id, error=str(e))

    async def _process_key(self, key: str, result: TickResult) -> None:
        try:
            record = await self.store.get(key)
        except ParseError as e:
            # A malformed record can never become valid in place; discard it
            result.parse_failures += 1
            logger.warning("permission_record_malformed", key=key, error=str(e))
            await self._delete(key, result)
            return

        if record is None:
            logger.debug("permission_record_vanished", key=key)
            return

        user_id = record.user_id
        try:
            membership = await self.platform.get_chat_member(self.chat_id, user_id)
        except PlatformApiError as e:
            result.lookup_failures += 1
            logger.error("member_lookup_failed", user_id=user_id, error=str(e))
            return

        action = decide_action(record, membership)
        if action in (Action.REMOVE_BOT, Action.REMOVE_INSUFFICIENT):
            await self._remove(user_id, action, result)
        elif action == Action.EXEMPT:
            result.exempt += 1
            logger.info("member_exempt", user_id=user_id, role=membership.role.value)
        else:
            result.kept += 1
            logger.debug("member_has_required_balance", user_id=user_id)

        await self._delete(key, result)

    async def _remove(self, user_id: str, action: Action, result: TickResult) -> None:
        try:
            await self.platform.ban_chat_member(self.chat_id, user_id)
        except PlatformApiError as e:
            result.removal_failures += 1
            logger.error("member_removal_failed",
                         user_id=user_id,
                         reason=action.value,
                         error=str(e))
            return
        result.removed += 1
        logger.info("member_removed", user_id=user_id, reason=action.value, chat_id=self.chat_id)

    async def _delete(self, key: str, result: TickResult) -> None:
        if await self.store.delete(key):
            result.deleted += 1
