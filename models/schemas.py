"""
Core data models for the gatekeeper.

Boundary schemas for everything that crosses into the process as JSON:
permission records written by the balance worker, analysis batches published
on the sentiment channel, and membership lookups returned by Telegram.
Anything that fails validation is reported as a ParseError by the caller.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator,
)

from core.errors import ParseError


def _load_json_object(raw: Any, source: str) -> dict[str, Any]:
    """Decode a JSON object from str/bytes, raising ParseError on anything else."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ParseError(f"Expected a JSON string, got {type(raw).__name__}", source)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON: {e}", source) from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}", source)
    return data


# ──────────────────────────────────────────────────────────────
#  Membership — live status on the platform (never persisted)
# ──────────────────────────────────────────────────────────────

class MemberRole(str, Enum):
    OWNER = "owner"
    ADMINISTRATOR = "administrator"
    MEMBER = "member"


class MembershipRecord(BaseModel):
    """A user's current standing in the gated group."""
    role: MemberRole = MemberRole.MEMBER
    is_bot_account: bool = False
    status: str = ""                          # raw platform status (creator, left, kicked, ...)

    @property
    def is_privileged(self) -> bool:
        return self.role in (MemberRole.OWNER, MemberRole.ADMINISTRATOR)


# ──────────────────────────────────────────────────────────────
#  Permission Record — per-user eligibility decision
# ──────────────────────────────────────────────────────────────

class PermissionRecord(BaseModel):
    """
    Eligibility decision stored under ``user:<id>:permissions``.

    Written by the external balance worker, read and deleted by the reconciler.
    """
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(default="", alias="userId")
    has_required_balance: StrictBool = Field(alias="hasRequiredBalance")
    checked_at: Optional[datetime] = Field(default=None, alias="checkedAt")

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value: Any) -> Any:
        # Telegram ids arrive as JSON numbers as often as strings
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def from_json(cls, raw: Any, user_id: str = "", source: str = "") -> PermissionRecord:
        data = _load_json_object(raw, source)
        if user_id:
            # the key is authoritative; a conflicting payload id must never be acted on
            embedded = data.get("userId")
            if embedded not in (None, "") and str(embedded) != str(user_id):
                raise ParseError(
                    f"Permission record user id {embedded!r} does not match key user id {user_id!r}",
                    source,
                )
            data["userId"] = user_id
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid permission record: {e.error_count()} error(s)", source) from e


# ──────────────────────────────────────────────────────────────
#  Sentiment Batch — published on the sentiment channel
# ──────────────────────────────────────────────────────────────

class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TopicCount(_WireModel):
    topic: str
    count: int


class SentimentAggregate(_WireModel):
    average_score: float = Field(default=0.0, alias="averageScore")
    average_credibility: float = Field(default=0.0, alias="averageCredibility")
    sentiment_distribution: dict[str, int] = Field(default_factory=dict, alias="sentimentDistribution")
    topic_counts: list[TopicCount] = Field(default_factory=list, alias="topTopics")

    def top_topics(self, limit: int = 3) -> list[TopicCount]:
        """Topics ordered by count, highest first (stable for ties)."""
        return sorted(self.topic_counts, key=lambda t: t.count, reverse=True)[:limit]


class ItemAnalysis(_WireModel):
    score: float
    credibility_score: float = Field(alias="credibilityScore")
    sentiment: str = ""


class ItemEngagement(_WireModel):
    likes: int = 0
    retweets: int = 0
    replies: int = 0
    views: int = 0
    bookmarks: int = 0


class SentimentItem(_WireModel):
    """One significant post inside a batch."""
    display_name: str = Field(default="", alias="name")
    handle: str = Field(alias="username")
    text: str
    analysis: ItemAnalysis
    engagement: ItemEngagement = Field(default_factory=ItemEngagement)

    @property
    def score(self) -> float:
        return self.analysis.score

    @property
    def credibility_score(self) -> float:
        return self.analysis.credibility_score

    @property
    def sentiment_label(self) -> str:
        return self.analysis.sentiment

    @property
    def like_count(self) -> int:
        return self.engagement.likes

    @property
    def share_count(self) -> int:
        return self.engagement.retweets

    @property
    def reply_count(self) -> int:
        return self.engagement.replies

    @property
    def view_count(self) -> int:
        return self.engagement.views


class BatchMetadata(_WireModel):
    total_analyzed: int = Field(default=0, alias="totalTweetsAnalyzed")
    significant_count: int = Field(alias="significantTweetsCount")
    target_accounts: list[str] = Field(default_factory=list, alias="targetAccounts")
    batch_id: str = Field(default="", alias="batchId")


class SentimentBatch(_WireModel):
    """An analysis batch as published by the sentiment worker."""
    timestamp: Optional[float] = None
    metadata: BatchMetadata
    aggregate: SentimentAggregate = Field(default_factory=SentimentAggregate, alias="statistics")
    items: list[SentimentItem] = Field(default_factory=list, alias="tweets")

    @property
    def batch_id(self) -> str:
        return self.metadata.batch_id

    @property
    def total_analyzed(self) -> int:
        return self.metadata.total_analyzed

    @property
    def significant_count(self) -> int:
        return self.metadata.significant_count

    @property
    def target_accounts(self) -> list[str]:
        return self.metadata.target_accounts

    @classmethod
    def from_json(cls, raw: Any, source: str = "") -> SentimentBatch:
        data = _load_json_object(raw, source)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid sentiment batch: {e.error_count()} error(s)", source) from e
