"""
Base class for fallback web sources.

Fallback providers scrape public flight-tracker pages. They are consulted
only when the primary provider's answer is low-signal, and they never raise:
every network, HTTP or parse failure is logged and reported as "no data".
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Any

import httpx

from app.core.config import get_settings
from app.core.metrics import provider_requests_total
from app.schemas.provider import ProviderRecord, ProviderSource
from app.utils.decorators import retry_with_backoff

logger = logging.getLogger(__name__)
settings = get_settings()


class FallbackProvider(ABC):
    """Shared HTTP plumbing for fallback sources"""
    
    source: ProviderSource
    
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client
        self._owns_client = http_client is None
    
    async def start(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.FALLBACK_TIMEOUT_SECONDS,
                headers={"user-agent": settings.FALLBACK_USER_AGENT},
                follow_redirects=True
            )
            self._owns_client = True
    
    async def close(self):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
    
    async def __aenter__(self):
        await self.start()
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
    
    @retry_with_backoff(
        max_retries=settings.FALLBACK_MAX_RETRIES,
        initial_delay=0.5,
        retry_on=(httpx.TransportError,)
    )
    async def _get(self, url: str) -> httpx.Response:
        return await self._http_client.get(url, headers={"user-agent": settings.FALLBACK_USER_AGENT})
    
    async def fetch_html(self, url: str) -> Optional[str]:
        """
        GET a page; transport errors are retried, non-2xx answers return None.
        """
        if self._http_client is None:
            await self.start()
        
        response = await self._get(url)
        if response.status_code >= 400:
            provider_requests_total.labels(provider=self.source.value, outcome="error").inc()
            logger.warning(f"{self.source.value} returned HTTP {response.status_code}", extra={"url": url})
            return None
        return response.text
    
    def extract_json(self, html: str, pattern: "re.Pattern[str]") -> Optional[Any]:
        """Pull an embedded JSON blob out of a page"""
        match = pattern.search(html)
        if not match:
            return None
        try:
            return json.loads(match.group(1))
        except ValueError as e:
            logger.warning(f"Failed to parse {self.source.value} payload: {str(e)}")
            return None
    
    async def lookup(
        self,
        carrier_code: str,
        flight_number: str,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        scheduled_departure: Optional[str] = None,
        alternate_designators: Sequence[str] = ()
    ) -> Optional[ProviderRecord]:
        """
        Look a flight up. Returns None on any failure or when the page has no usable data.
        """
        try:
            record = await self._lookup(
                carrier_code,
                flight_number,
                origin,
                destination,
                scheduled_departure,
                alternate_designators
            )
        except Exception as e:
            provider_requests_total.labels(provider=self.source.value, outcome="error").inc()
            logger.warning(
                f"{self.source.value} fallback failed for {carrier_code}{flight_number}: {str(e)}"
            )
            return None
        
        provider_requests_total.labels(
            provider=self.source.value,
            outcome="success" if record else "empty"
        ).inc()
        return record
    
    @abstractmethod
    async def _lookup(
        self,
        carrier_code: str,
        flight_number: str,
        origin: Optional[str],
        destination: Optional[str],
        scheduled_departure: Optional[str],
        alternate_designators: Sequence[str]
    ) -> Optional[ProviderRecord]:
        ...
