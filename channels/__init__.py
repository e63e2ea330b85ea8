"""Messaging platform clients."""
from channels.telegram import TelegramClient, normalize_chat_id, SUPERGROUP_PREFIX

__all__ = ["TelegramClient", "normalize_chat_id", "SUPERGROUP_PREFIX"]
