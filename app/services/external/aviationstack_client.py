import httpx
import logging
from typing import Optional, List, Dict, Any
from app.core.config import get_settings
from app.core.metrics import provider_requests_total
from app.schemas.aviationstack import AviationStackFlight, AviationStackResponse
from app.services.budget.usage_ledger import UsageLedger
from app.services.cache.response_cache import ResponseCache
from app.exceptions import ProviderException, ProviderAuthException, UsageLimitException

logger = logging.getLogger(__name__)
settings = get_settings()

PROVIDER = "aviationstack"

# Error codes AviationStack returns in the JSON body
USAGE_LIMIT_CODES = {"usage_limit_reached", "rate_limit_reached"}
AUTH_ERROR_CODES = {
    "invalid_access_key",
    "missing_access_key",
    "inactive_user",
    "function_access_restricted",
    "https_access_restricted",
}


class AviationStackClient:
    """
    Client for the AviationStack /flights endpoint.
    
    Every outgoing HTTP request is recorded in the usage ledger before it is
    sent; cache hits cost nothing. Requests are never retried since each one
    spends budget.
    """
    
    def __init__(
        self,
        usage_ledger: Optional[UsageLedger] = None,
        cache: Optional[ResponseCache] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.access_key = settings.AVIATIONSTACK_ACCESS_KEY
        self.api_base_url = settings.AVIATIONSTACK_API_BASE_URL
        self.usage_ledger = usage_ledger
        self.cache = cache
        self._http_client: Optional[httpx.AsyncClient] = http_client
        self._owns_client = http_client is None
    
    async def __aenter__(self):
        await self.start()
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
    
    async def start(self):
        """Initialize HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.AVIATIONSTACK_TIMEOUT_SECONDS)
            self._owns_client = True
    
    async def close(self):
        """Close HTTP client"""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
    
    async def _make_request(self, endpoint: str, params: Dict[str, Any]) -> AviationStackResponse:
        """
        Make HTTP request to AviationStack API.
        
        Raises:
            UsageLimitException: provider quota exhausted (HTTP 429 or usage-limit payload)
            ProviderAuthException: credentials rejected or plan too small
            ProviderException: any other failure
        """
        if self._http_client is None:
            await self.start()
        
        url = f"{self.api_base_url}{endpoint}"
        request_params = dict(params)
        request_params["access_key"] = self.access_key
        
        if self.usage_ledger:
            await self.usage_ledger.record_request()
        
        try:
            logger.debug(f"Making request to {endpoint}", extra={"params": params})
            response = await self._http_client.get(url, params=request_params)
        except httpx.HTTPError as e:
            provider_requests_total.labels(provider=PROVIDER, outcome="error").inc()
            logger.warning(f"Request to {endpoint} failed: {str(e)}")
            raise ProviderException(f"Request error: {str(e)}") from e
        
        if response.status_code == 429:
            provider_requests_total.labels(provider=PROVIDER, outcome="rate_limited").inc()
            await self._on_usage_limit()
            raise UsageLimitException("Rate limit exceeded")
        
        if response.status_code in (401, 403):
            provider_requests_total.labels(provider=PROVIDER, outcome="auth").inc()
            logger.error(f"AviationStack rejected credentials (HTTP {response.status_code})")
            raise ProviderAuthException("Invalid API key")
        
        try:
            payload = response.json()
        except ValueError as e:
            provider_requests_total.labels(provider=PROVIDER, outcome="error").inc()
            logger.warning(f"Malformed response from {endpoint} (HTTP {response.status_code})")
            raise ProviderException(f"API request failed: {response.status_code}") from e
        
        if isinstance(payload, dict) and payload.get("error"):
            await self._raise_for_error_payload(payload["error"])
        
        if response.status_code >= 400:
            provider_requests_total.labels(provider=PROVIDER, outcome="error").inc()
            logger.warning(f"HTTP error on {endpoint}: {response.status_code}")
            raise ProviderException(f"API request failed: {response.status_code}")
        
        try:
            parsed = AviationStackResponse.model_validate(payload)
        except ValueError as e:
            provider_requests_total.labels(provider=PROVIDER, outcome="error").inc()
            logger.warning(f"Unexpected payload shape from {endpoint}: {str(e)}")
            raise ProviderException("Unexpected payload shape") from e
        
        provider_requests_total.labels(provider=PROVIDER, outcome="success").inc()
        return parsed
    
    async def _raise_for_error_payload(self, error: Dict[str, Any]):
        code = str(error.get("code") or "").lower()
        message = error.get("message") or "Unknown error"
        
        if code in USAGE_LIMIT_CODES:
            provider_requests_total.labels(provider=PROVIDER, outcome="rate_limited").inc()
            await self._on_usage_limit()
            raise UsageLimitException("Rate limit exceeded")
        if code in AUTH_ERROR_CODES:
            provider_requests_total.labels(provider=PROVIDER, outcome="auth").inc()
            logger.error(f"AviationStack API error: {message}", extra={"code": code})
            raise ProviderAuthException("Invalid API key")
        
        provider_requests_total.labels(provider=PROVIDER, outcome="error").inc()
        logger.warning(f"AviationStack API error: {message}", extra={"code": code})
        raise ProviderException(f"API error: {message}")
    
    async def _on_usage_limit(self):
        logger.warning("AviationStack reported the usage limit as reached")
        if self.usage_ledger:
            await self.usage_ledger.mark_usage_limit_reached()
    
    async def _fetch_flights(
        self,
        cache_key: str,
        params: Dict[str, Any],
        bypass_cache: bool
    ) -> List[AviationStackFlight]:
        if self.cache is not None and not bypass_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                provider_requests_total.labels(provider=PROVIDER, outcome="cache_hit").inc()
                return cached
        
        response = await self._make_request("/flights", params)
        
        flights = response.data
        if self.cache is not None and flights:
            self.cache.set(cache_key, flights)
        return flights
    
    async def get_flights_by_number(
        self,
        flight_number: str,
        flight_date: str,
        bypass_cache: bool = False
    ) -> List[AviationStackFlight]:
        """
        Get flights for a designator on a date.
        
        Records whose own flight_date matches the requested date are preferred;
        when none match, everything the provider returned is kept.
        """
        logger.info(f"Looking up {flight_number} on {flight_date}")
        
        flights = await self._fetch_flights(
            f"flights:{flight_number}:{flight_date}",
            {"flight_iata": flight_number, "flight_date": flight_date},
            bypass_cache
        )
        return _prefer_requested_date(flights, flight_date)
    
    async def get_flights_by_route(
        self,
        origin: str,
        destination: str,
        flight_date: str,
        bypass_cache: bool = False
    ) -> List[AviationStackFlight]:
        """Get flights between two airports on a date"""
        logger.info(f"Looking up flights {origin} -> {destination} on {flight_date}")
        
        flights = await self._fetch_flights(
            f"routes:{origin}:{destination}:{flight_date}",
            {"dep_iata": origin, "arr_iata": destination, "flight_date": flight_date},
            bypass_cache
        )
        return _prefer_requested_date(flights, flight_date)


def _prefer_requested_date(flights: List[AviationStackFlight], flight_date: str) -> List[AviationStackFlight]:
    matching = [f for f in flights if f.flight_date == flight_date]
    return matching or flights


def select_best_matching_flight(
    flights: List[AviationStackFlight],
    origin: Optional[str],
    destination: Optional[str]
) -> Optional[AviationStackFlight]:
    """Exact origin+destination match, else the first result"""
    if not flights:
        return None
    for flight in flights:
        if flight.matches_route(origin, destination):
            return flight
    return flights[0]
