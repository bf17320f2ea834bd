"""
Request id allocation and the correlation table.

The table maps every key that can still receive a delivery to the handler
that must receive it. Request ids and subscription topics live in separate
maps, so the two key spaces can never collide.
"""

import logging
import random
from enum import Enum
from typing import Any, Callable, Container, Iterator, KeysView, Optional

from .envelope import CorrelationKey, EnvelopeConst, RequestKey, TopicKey

Handler = Callable[..., Any]


class ReclaimPolicy(Enum):
    """What happens to a one-shot request entry once its response is delivered"""
    KEEP = "keep"        # Entry stays registered, as the gateway protocol historically behaves
    RECLAIM = "reclaim"  # Entry is removed after the handler returns


class IdAllocator:
    """
    Draws request ids uniformly from the 32-bit range.

    Ids in `in_use` are avoided for a bounded number of draws. After that the
    last draw is returned anyway, so uniqueness is likely but not guaranteed.
    """

    MAX_REDRAWS = 8

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def allocate(self, in_use: Container[int] = ()) -> int:
        proposed = self._rng.randrange(EnvelopeConst.ID_LIMIT)
        for _ in range(self.MAX_REDRAWS):
            if proposed not in in_use:
                break
            proposed = self._rng.randrange(EnvelopeConst.ID_LIMIT)
        return proposed


class CorrelationTable:
    """Maps correlation keys to handlers. Each key holds at most one handler."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._requests: dict[int, Handler] = {}
        self._topics: dict[str, Handler] = {}

    def _map_for(self, key: CorrelationKey) -> tuple[dict, int | str]:
        match key:
            case RequestKey(id=request_id):
                return self._requests, request_id
            case TopicKey(name=name):
                return self._topics, name
        raise TypeError(f"Not a correlation key: {key!r}")

    def register(self, key: CorrelationKey, handler: Handler) -> Optional[Handler]:
        """Register a handler, returning the one it replaced (last registration wins)"""
        table, k = self._map_for(key)
        previous = table.get(k)
        table[k] = handler
        if previous is not None and previous is not handler and isinstance(key, RequestKey):
            self.logger.warning(f"Request id collision: {key} was still pending and has been overwritten")
        return previous

    def lookup(self, key: CorrelationKey) -> Optional[Handler]:
        table, k = self._map_for(key)
        return table.get(k)

    def remove(self, key: CorrelationKey, handler: Optional[Handler] = None) -> bool:
        """
        Remove a key. If `handler` is given, only remove it while the key still
        maps to that handler, so a later re-registration survives.
        """
        table, k = self._map_for(key)
        if k not in table:
            return False
        if handler is not None and table[k] is not handler:
            return False
        del table[k]
        return True

    def clear(self) -> None:
        self._requests.clear()
        self._topics.clear()

    def request_ids(self) -> KeysView[int]:
        """Live view of the pending request ids"""
        return self._requests.keys()

    def topics(self) -> KeysView[str]:
        return self._topics.keys()

    def __contains__(self, key: CorrelationKey) -> bool:
        table, k = self._map_for(key)
        return k in table

    def __len__(self) -> int:
        return len(self._requests) + len(self._topics)

    def __iter__(self) -> Iterator[CorrelationKey]:
        for request_id in list(self._requests):
            yield RequestKey(request_id)
        for name in list(self._topics):
            yield TopicKey(name)
