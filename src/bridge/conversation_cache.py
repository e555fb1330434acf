from __future__ import annotations

import logging
from threading import Lock, RLock
from typing import Callable

from src.bridge.store import BridgeStore
from src.models.bridge import ConversationMapping
from src.observability import incr_metric, log_event


class ConversationCache:
    """
    Two-tier (memory, then store) map of tenant chat -> remote conversation.

    Entries never expire: a chat's remote conversation id does not change. The
    check/create/persist sequence runs under a lock per tenant chat, so concurrent
    first contact for one chat produces a single remote conversation.
    """

    def __init__(self, store: BridgeStore):
        self.store = store
        self._lock = Lock()
        self._memory: dict[str, ConversationMapping] = {}
        self._key_locks: dict[str, RLock] = {}

    @staticmethod
    def cache_key(tenant_id: str, chat_jid: str) -> str:
        return f"{tenant_id}:{chat_jid}"

    def _key_lock(self, key: str) -> RLock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = RLock()
            return lock

    def lock_for(self, tenant_id: str, chat_jid: str) -> RLock:
        """Re-entrant lock guarding first creation of a chat's remote resources."""
        return self._key_lock(self.cache_key(tenant_id, chat_jid))

    def _from_memory(self, key: str) -> ConversationMapping | None:
        with self._lock:
            return self._memory.get(key)

    def _to_memory(self, key: str, mapping: ConversationMapping) -> None:
        with self._lock:
            self._memory[key] = mapping

    def clear_memory(self) -> None:
        with self._lock:
            self._memory.clear()

    def get_or_create(
        self,
        tenant_id: str,
        chat_jid: str,
        create: Callable[[], ConversationMapping],
    ) -> ConversationMapping:
        key = self.cache_key(tenant_id, chat_jid)
        cached = self._from_memory(key)
        if cached:
            incr_metric("bridge.conversation_cache.hit", tier="memory")
            return cached

        with self._key_lock(key):
            # Another caller may have filled the slot while we waited.
            cached = self._from_memory(key)
            if cached:
                incr_metric("bridge.conversation_cache.hit", tier="memory")
                return cached

            stored = self.store.get_conversation(tenant_id, chat_jid)
            if stored:
                self._to_memory(key, stored)
                incr_metric("bridge.conversation_cache.hit", tier="store")
                log_event(
                    "conversation_cache_store_hit",
                    level=logging.DEBUG,
                    tenant_id=tenant_id,
                    chat_jid=chat_jid,
                    conversation_id=stored.conversation_id,
                )
                return stored

            mapping = create()
            incr_metric("bridge.conversation_cache.miss")
            try:
                self.store.insert_conversation(mapping)
            except Exception as exc:
                # Memory still serves this process; a restart before a later write may duplicate.
                log_event(
                    "conversation_mapping_persist_failed",
                    level=logging.ERROR,
                    tenant_id=tenant_id,
                    chat_jid=chat_jid,
                    conversation_id=mapping.conversation_id,
                    error=str(exc),
                )
            self._to_memory(key, mapping)
            log_event(
                "conversation_created",
                tenant_id=tenant_id,
                chat_jid=chat_jid,
                conversation_id=mapping.conversation_id,
                contact_id=mapping.contact_id,
            )
            return mapping

    def remember(self, mapping: ConversationMapping) -> None:
        """Persist and cache a mapping learned from the platform side."""
        key = self.cache_key(mapping.tenant_id, mapping.chat_jid)
        with self._key_lock(key):
            self.store.upsert_conversation(mapping)
            self._to_memory(key, mapping)
