"""Process-wide encryption key resource."""

import logging
import time
from threading import Lock
from typing import Callable, Optional

from hft_control.core.errors import StateError

logger = logging.getLogger(__name__)

SECRET_NAME = "encryption_key"


class KeyCache:
    """
    Holds the envelope encryption key for ``ttl_s`` seconds.

    Sources, in order: the configured fallback key (ENCRYPTION_KEY), then
    the ``encryption_key`` row of the secrets table. Loading happens under a
    lock so concurrent first accesses initialize it once.
    """

    def __init__(
        self,
        store=None,
        fallback_key: Optional[str] = None,
        ttl_s: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._fallback_key = fallback_key
        self._ttl_s = ttl_s
        self._clock = clock
        self._lock = Lock()
        self._key: Optional[str] = None
        self._loaded_at: Optional[float] = None
        self.loads = 0

    def get(self) -> str:
        with self._lock:
            if self._key is not None and not self._expired():
                return self._key

            key = self._load()
            self._key = key
            self._loaded_at = self._clock()
            self.loads += 1
            return key

    def invalidate(self) -> None:
        with self._lock:
            self._key = None
            self._loaded_at = None

    def _expired(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at >= self._ttl_s

    def _load(self) -> str:
        if self._fallback_key:
            return self._fallback_key

        if self._store is not None:
            key = self._store.get_secret(SECRET_NAME)
            if key:
                logger.debug("[keys] Loaded encryption key from secrets table")
                return key

        raise StateError("no_encryption_key", "No encryption key configured")
