"""Token set describing which long-running operations are in progress."""

import itertools
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)

# Tokens with this prefix belong to the re-engagement timers themselves
REENGAGE_PREFIX = "reengage-"
USER_HOLD_TAG = "user-hold"


class BusyState:
    """Opaque busy tokens of the form ``<tag>:<n>``."""

    def __init__(self):
        self._tokens: Set[str] = set()
        self._counter = itertools.count(1)
        self._listeners: List[Callable[[], None]] = []
        self._user_hold: Optional[str] = None

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Busy state listener failed: {e}")

    @staticmethod
    def tag_of(token: str) -> str:
        return token.split(":", 1)[0]

    def acquire(self, tag: str) -> str:
        token = f"{tag}:{next(self._counter)}"
        self._tokens.add(token)
        logger.debug(f"Busy token acquired: {token}")
        self._notify()
        return token

    def release(self, token: Optional[str]) -> bool:
        if not token or token not in self._tokens:
            return False
        self._tokens.discard(token)
        logger.debug(f"Busy token released: {token}")
        self._notify()
        return True

    @contextmanager
    def hold(self, tag: str) -> Iterator[str]:
        token = self.acquire(tag)
        try:
            yield token
        finally:
            self.release(token)

    def is_busy(self, tag: Optional[str] = None) -> bool:
        if tag is None:
            return bool(self._tokens)
        return any(self.tag_of(t) == tag for t in self._tokens)

    def tags(self) -> List[str]:
        return sorted({self.tag_of(t) for t in self._tokens})

    def external_count(self) -> int:
        """Number of tokens not owned by the re-engagement timers."""
        return sum(1 for t in self._tokens if not t.startswith(REENGAGE_PREFIX))

    def toggle_user_hold(self) -> bool:
        """Toggle a user-requested hold; returns whether the hold is now active."""
        if self._user_hold:
            self.release(self._user_hold)
            self._user_hold = None
            return False
        self._user_hold = self.acquire(USER_HOLD_TAG)
        return True
