import logging
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar('V')


class ResponseCache(Generic[V]):
    """
    In-process LRU cache for primary provider responses.
    
    Reads move an entry to the most-recently-used position; inserting at
    capacity evicts the least-recently-used entry. Entries older than the
    TTL are treated as misses and dropped.
    """
    
    def __init__(
        self,
        max_entries: int = 256,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, V]]" = OrderedDict()
    
    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"Cache miss for {key}")
            return None
        
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            logger.debug(f"Cache entry expired for {key}")
            return None
        
        self._entries.move_to_end(key)
        logger.debug(f"Cache hit for {key}")
        return value
    
    def set(self, key: str, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted} from response cache")
        self._entries[key] = (self._clock(), value)
    
    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
    
    def clear(self) -> None:
        self._entries.clear()
    
    def __contains__(self, key: str) -> bool:
        return key in self._entries
    
    def __len__(self) -> int:
        return len(self._entries)
