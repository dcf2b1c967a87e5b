"""
In-memory message cache.

Mirrors the synchronizer's view of fetched messages, keyed by
(owner, remote mailbox path, UID). Entries expire after a TTL so a mailbox
mutated by another client is never served stale for longer than that. The
cache never originates mutations; the synchronizer invalidates entries after
each write it performs.
"""
import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from mail_core import config
from mail_core.models import Message


logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, int]


@dataclass(slots=True)
class _CacheEntry:
    message: Message
    expires_at: float


class MessageCache:
    """Thread-safe TTL cache of Message objects."""

    def __init__(self, ttl: float = config.MESSAGE_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry stays valid after it was stored.
            clock: Monotonic time source (injectable for tests).
        """
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, _CacheEntry] = {}

    def get(self, owner_id: str, mailbox: str, uid: int, require_body: bool = False) -> Optional[Message]:
        """
        Return a copy of the cached message, or None on a miss.

        Args:
            require_body: Treat a header-only summary as a miss.
        """
        key = (owner_id, mailbox, uid)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            if require_body and not entry.message.has_body:
                return None
            return copy.deepcopy(entry.message)

    def get_many(self, owner_id: str, mailbox: str, uids: Iterable[int]) -> Dict[int, Message]:
        """Return copies of every live cached entry among ``uids``."""
        found = {}
        for uid in uids:
            message = self.get(owner_id, mailbox, uid)
            if message is not None:
                found[uid] = message
        return found

    def put(self, owner_id: str, message: Message) -> None:
        """
        Store a copy of a message under its mailbox and UID.

        A header-only summary does not replace a live full entry's body; the
        flags and headers are refreshed and the body kept.
        """
        stored = copy.deepcopy(message)
        key = (owner_id, message.mailbox, message.uid)
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if (not stored.has_body and existing is not None
                    and existing.expires_at > now and existing.message.has_body):
                stored.body_plain = existing.message.body_plain
                stored.body_html = existing.message.body_html
                stored.attachments = existing.message.attachments
                stored.has_attachments = existing.message.has_attachments
                stored.has_body = True
            self._entries[key] = _CacheEntry(stored, now + self.ttl)

    def put_many(self, owner_id: str, messages: Iterable[Message]) -> None:
        for message in messages:
            self.put(owner_id, message)

    def invalidate(self, owner_id: str, mailbox: str, uid: int) -> None:
        """Drop one entry."""
        with self._lock:
            self._entries.pop((owner_id, mailbox, uid), None)
        logger.debug("Cache invalidated %s:%s:%s", owner_id, mailbox, uid)

    def invalidate_folder(self, owner_id: str, mailbox: str) -> None:
        """Drop every entry of one mailbox."""
        with self._lock:
            for key in [k for k in self._entries if k[0] == owner_id and k[1] == mailbox]:
                del self._entries[key]
        logger.debug("Cache invalidated folder %s:%s", owner_id, mailbox)

    def invalidate_owner(self, owner_id: str) -> None:
        """Drop every entry belonging to an owner."""
        with self._lock:
            for key in [k for k in self._entries if k[0] == owner_id]:
                del self._entries[key]
        logger.debug("Cache invalidated owner %s", owner_id)

    def retain_only(self, owner_id: str, mailbox: str, live_uids: Iterable[int]) -> None:
        """Drop entries of a mailbox whose UIDs the store no longer reports."""
        live = set(live_uids)
        with self._lock:
            for key in [k for k in self._entries
                        if k[0] == owner_id and k[1] == mailbox and k[2] not in live]:
                del self._entries[key]

    def purge_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
