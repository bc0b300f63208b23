import redis.asyncio as redis
import logging
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel
from app.core.config import get_settings
from app.schemas.aviationstack import AviationStackFlight
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class PendingSelection(BaseModel):
    """Candidates offered to a subscriber, waiting for a pick"""
    subscriber_key: str
    flights: List[AviationStackFlight]
    requested_date: Optional[str] = None
    created_at: datetime


class PendingSelectionStore:
    """
    Redis-backed store of multi-candidate lookups, keyed by subscriber.
    Entries expire on their own; a missing or expired entry reads as None.
    """
    
    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis_url = settings.REDIS_URL
        self.ttl = settings.PENDING_SELECTION_TTL_SECONDS
        self.enabled = settings.ENABLE_PENDING_SELECTIONS
        self._client: Optional[redis.Redis] = client
    
    async def connect(self):
        """Initialize Redis connection"""
        if not self.enabled:
            logger.info("Pending selections disabled via configuration")
            return
        if self._client is not None:
            return
        
        try:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._client.ping()
            logger.info("Successfully connected to Redis for pending selections")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            self._client = None
            # Multi-candidate selection degrades to "search again"
    
    async def disconnect(self):
        """Close Redis connection"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")
    
    @property
    def available(self) -> bool:
        return self.enabled and self._client is not None
    
    def _key(self, subscriber_key: str) -> str:
        return f"selection:{subscriber_key}"
    
    async def put(
        self,
        subscriber_key: str,
        flights: List[AviationStackFlight],
        requested_date: Optional[str] = None
    ) -> bool:
        """
        Store candidates for a subscriber, replacing any previous selection.
        
        Returns:
            False when the store is unavailable
        """
        if not self.available:
            return False
        
        selection = PendingSelection(
            subscriber_key=subscriber_key,
            flights=flights,
            requested_date=requested_date,
            created_at=utcnow()
        )
        try:
            await self._client.setex(self._key(subscriber_key), self.ttl, selection.model_dump_json())
            logger.debug(
                f"Stored {len(flights)} pending candidates",
                extra={"subscriber_key": subscriber_key, "ttl": self.ttl}
            )
            return True
        except Exception as e:
            logger.warning(f"Error storing pending selection: {str(e)}")
            return False
    
    async def get(self, subscriber_key: str) -> Optional[PendingSelection]:
        if not self.available:
            return None
        
        try:
            cached_value = await self._client.get(self._key(subscriber_key))
            if not cached_value:
                return None
            return PendingSelection.model_validate_json(cached_value)
        except Exception as e:
            logger.warning(f"Error reading pending selection: {str(e)}")
            return None
    
    async def clear(self, subscriber_key: str) -> None:
        if not self.available:
            return
        
        try:
            await self._client.delete(self._key(subscriber_key))
        except Exception as e:
            logger.warning(f"Error clearing pending selection: {str(e)}")
