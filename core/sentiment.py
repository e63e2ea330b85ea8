"""
Sentiment Fan-out — turns analysis batches into Telegram alerts.

Subscribes once to ``sentiment:updates`` on the dedicated subscriber
connection. Each published batch is validated, rendered as a single HTML
message and delivered once to the alert group. Nothing that goes wrong with
one batch (bad JSON, schema mismatch, delivery failure) reaches the broker
or stops the subscription.
"""
from __future__ import annotations

import asyncio
import html
import structlog
from typing import Any, Optional

from redis.exceptions import RedisError

from channels.telegram import TelegramClient, normalize_chat_id
from core.errors import ConfigurationError, ParseError, PlatformApiError
from database.connection import ConnectionManager
from models.schemas import SentimentBatch, SentimentItem

logger = structlog.get_logger()

SENTIMENT_CHANNEL = "sentiment:updates"
DIVIDER = "\n\n━━━━━━━━━━\n\n"
TELEGRAM_MESSAGE_LIMIT = 4096
_OVERFLOW_RESERVE = len(DIVIDER) + 24          # room for the "… and N more" line


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def format_header(batch: SentimentBatch, max_topics: int = 3) -> str:
    topics = batch.aggregate.top_topics(max_topics)
    topics_line = ", ".join(f"{html.escape(t.topic)} ({t.count})" for t in topics) or "none"
    return (
        "🔥 Sentiment Analysis Update\n\n"
        f"Analyzed {batch.total_analyzed} tweets\n"
        f"Found {batch.significant_count} significant tweets\n\n"
        "📊 Statistics:\n"
        f"Average Sentiment: {_pct(batch.aggregate.average_score)}\n"
        f"Average Credibility: {_pct(batch.aggregate.average_credibility)}\n\n"
        f"🔝 Top Topics: {topics_line}\n\n"
        "Significant Tweets:\n\n"
    )


def format_item(item: SentimentItem) -> str:
    handle = f"@{html.escape(item.handle)}"
    author = f"<b>{html.escape(item.display_name)}</b> {handle}" if item.display_name else f"<b>{handle}</b>"
    label = f" ({html.escape(item.sentiment_label)})" if item.sentiment_label else ""
    return (
        f"{author}\n"
        f"{html.escape(item.text)}\n\n"
        f"Sentiment: {_pct(item.score)}{label}\n"
        f"Credibility: {_pct(item.credibility_score)}\n\n"
        f"👍 {item.like_count} 🔄 {item.share_count} 💬 {item.reply_count} 👀 {item.view_count}"
    )


def format_batch(batch: SentimentBatch, max_topics: int = 3,
                 limit: int = TELEGRAM_MESSAGE_LIMIT) -> str:
    """Render a batch as one message. Whole item blocks are dropped to stay under the limit."""
    header = format_header(batch, max_topics)
    blocks: list[str] = []
    length = len(header)
    for index, item in enumerate(batch.items):
        block = format_item(item)
        needed = len(block) + (len(DIVIDER) if blocks else 0)
        if length + needed + _OVERFLOW_RESERVE > limit:
            blocks.append(f"… and {len(batch.items) - index} more")
            break
        blocks.append(block)
        length += needed
    return header + DIVIDER.join(blocks)


def resolve_destination(chat_id: Any) -> str:
    """Normalized alert destination; ConfigurationError when none is set."""
    if not str(chat_id or "").strip():
        raise ConfigurationError("No sentiment alert destination configured", setting="PRIVATE_GROUP_ID")
    return normalize_chat_id(chat_id)


class SentimentFanout:
    """
    Owns the sentiment subscription for the lifetime of the process.

    Usage:
        fanout = SentimentFanout(connections, telegram, chat_id="123456")
        await fanout.start()
        ...
        await fanout.stop()     # idempotent
    """

    def __init__(
        self,
        connections: ConnectionManager,
        platform: TelegramClient,
        chat_id: str = "",
        channel: str = SENTIMENT_CHANNEL,
        max_topics: int = 3,
    ):
        self.connections = connections
        self.platform = platform
        self.chat_id = str(chat_id or "")
        self.channel = channel
        self.max_topics = max_topics
        self.delivered = 0
        self.dropped = 0
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

        try:
            resolve_destination(self.chat_id)
        except ConfigurationError as e:
            logger.warning("sentiment_destination_missing", setting=e.setting)

    @property
    def subscribed(self) -> bool:
        return self._pubsub is not None

    @property
    def destination(self) -> str:
        return normalize_chat_id(self.chat_id) if self.chat_id else ""

    async def start(self) -> None:
        """Subscribe to the channel and start the listener task."""
        if self._pubsub is not None:
            return
        pubsub = self.connections.subscriber.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self.channel)
        except (RedisError, OSError) as e:
            logger.error("sentiment_subscribe_failed", channel=self.channel, error=str(e))
            await pubsub.aclose()
            return
        self._pubsub = pubsub
        self._task = asyncio.create_task(self._listen(pubsub), name="sentiment_fanout")
        logger.info("sentiment_fanout_started", channel=self.channel, destination=self.destination)

    async def _listen(self, pubsub) -> None:
        while self._pubsub is pubsub:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message" or message.get("channel") != self.channel:
                        continue
                    try:
                        await self.handle_message(message.get("data"))
                    except Exception as e:
                        logger.error("sentiment_message_error", error=str(e))
            except asyncio.CancelledError:
                break
            except (RedisError, OSError) as e:
                logger.error("sentiment_subscriber_error", channel=self.channel, error=str(e))
                await asyncio.sleep(1)
            except Exception as e:
                logger.error("sentiment_listener_crashed", channel=self.channel, error=str(e),
                             exc_info=True)
                await self._drop_subscription(pubsub)
                break
            else:
                # listen() ends once the subscription is gone
                break

    async def _drop_subscription(self, pubsub) -> None:
        """Forget a dead subscription so health reports it as unsubscribed."""
        if self._pubsub is pubsub:
            self._pubsub = None
            self._task = None
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.error("sentiment_pubsub_close_failed", error=str(e))

    async def handle_message(self, raw: Any) -> bool:
        """Process one published payload. Returns True if an alert was delivered."""
        try:
            batch = SentimentBatch.from_json(raw, source=self.channel)
        except ParseError as e:
            self.dropped += 1
            logger.error("sentiment_batch_invalid", channel=self.channel, error=str(e))
            return False
        return await self.broadcast(batch)

    async def broadcast(self, batch: SentimentBatch) -> bool:
        if batch.significant_count == 0 or not self.chat_id:
            logger.debug("sentiment_batch_suppressed",
                         batch_id=batch.batch_id,
                         significant=batch.significant_count,
                         configured=bool(self.chat_id))
            return False

        text = format_batch(batch, self.max_topics)
        try:
            await self.platform.send_message(self.destination, text, parse_mode="HTML")
        except PlatformApiError as e:
            logger.error("sentiment_delivery_failed",
                         batch_id=batch.batch_id,
                         destination=self.destination,
                         error=str(e))
            return False

        self.delivered += 1
        logger.info("sentiment_update_sent",
                    batch_id=batch.batch_id,
                    destination=self.destination,
                    items=len(batch.items))
        return True

    async def stop(self) -> None:
        """Unsubscribe and stop listening. Safe to call repeatedly or before start()."""
        pubsub, self._pubsub = self._pubsub, None
        task, self._task = self._task, None
        if pubsub is None:
            return

        try:
            await pubsub.unsubscribe(self.channel)
        except (RedisError, OSError) as e:
            logger.error("sentiment_unsubscribe_failed", channel=self.channel, error=str(e))

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.error("sentiment_pubsub_close_failed", error=str(e))
        logger.info("sentiment_fanout_stopped", channel=self.channel)
