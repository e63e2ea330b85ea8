"""Shared test fixtures for the gatekeeper."""
import fnmatch
import json
import pytest
from typing import Any
from unittest.mock import AsyncMock

from core.errors import PlatformApiError
from database.permissions import PermissionStore
from job_queue.balance_checks import InMemoryBalanceCheckQueue
from models.schemas import MemberRole, MembershipRecord


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the permission store and queue producer."""

    def __init__(self, data: dict[str, str] = None):
        self.data: dict[str, str] = dict(data or {})
        self.deleted: list[str] = []
        self.streams: dict[str, list[dict[str, Any]]] = {}

    async def scan_iter(self, match: str = "*", count: int = None):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def get(self, key: str):
        return self.data.get(key)

    async def delete(self, key: str) -> int:
        self.deleted.append(key)
        return 1 if self.data.pop(key, None) is not None else 0

    async def xadd(self, name: str, fields: dict[str, Any], maxlen: int = None, approximate: bool = True):
        entries = self.streams.setdefault(name, [])
        entries.append(fields)
        return f"{len(entries)}-0"


def permission_json(has_required_balance: bool, **extra) -> str:
    return json.dumps({"hasRequiredBalance": has_required_balance, **extra})


def member(role: MemberRole = MemberRole.MEMBER, is_bot: bool = False) -> MembershipRecord:
    return MembershipRecord(role=role, is_bot_account=is_bot)


def make_platform(members: dict[str, Any] = None) -> AsyncMock:
    """
    Telegram stand-in. ``members`` maps user id → MembershipRecord, or an
    exception instance to raise from getChatMember.
    """
    members = members or {}
    platform = AsyncMock()

    async def get_chat_member(chat_id, user_id):
        value = members.get(str(user_id), member())
        if isinstance(value, Exception):
            raise value
        return value

    platform.get_chat_member = AsyncMock(side_effect=get_chat_member)
    platform.ban_chat_member = AsyncMock(return_value=True)
    platform.send_message = AsyncMock(return_value={"message_id": 1})
    return platform


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def permission_store(fake_redis) -> PermissionStore:
    return PermissionStore(fake_redis)


@pytest.fixture
def memory_queue() -> InMemoryBalanceCheckQueue:
    return InMemoryBalanceCheckQueue()


@pytest.fixture
def lookup_error() -> PlatformApiError:
    return PlatformApiError("getChatMember failed (502): Bad Gateway",
                            method="getChatMember", status_code=502)


@pytest.fixture
def sample_batch() -> dict[str, Any]:
    """A realistic batch as published by the sentiment worker."""
    return {
        "timestamp": 1735689600000,
        "metadata": {
            "totalTweetsAnalyzed": 40,
            "significantTweetsCount": 2,
            "targetAccounts": ["solana", "aeyakovenko"],
            "batchId": "batch-0042",
        },
        "statistics": {
            "averageScore": 0.6234,
            "averageCredibility": 0.811,
            "sentimentDistribution": {"positive": 25, "neutral": 10, "negative": 5},
            "topTopics": [
                {"topic": "airdrop", "count": 3},
                {"topic": "staking", "count": 9},
                {"topic": "validators", "count": 5},
                {"topic": "memes", "count": 1},
            ],
        },
        "tweets": [
            {
                "name": "Toly",
                "username": "aeyakovenko",
                "text": "Firedancer on mainnet <soon>",
                "analysis": {"score": 0.9, "credibilityScore": 0.95, "sentiment": "positive"},
                "engagement": {"likes": 1200, "retweets": 300, "replies": 85, "views": 150000, "bookmarks": 40},
            },
            {
                "name": "Solana",
                "username": "solana",
                "text": "Network upgrade complete",
                "analysis": {"score": 0.555, "credibilityScore": 0.7, "sentiment": "neutral"},
                "engagement": {"likes": 800, "retweets": 120, "replies": 30, "views": 90000, "bookmarks": 12},
            },
        ],
    }
