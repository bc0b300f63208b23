from app.exceptions.custom_exceptions import (
    FlightTrackerException,
    ProviderException,
    UsageLimitException,
    ProviderAuthException,
    BudgetExceededException,
    SelectionExpiredException,
    CacheException,
    ConfigurationException
)

__all__ = [
    "FlightTrackerException",
    "ProviderException",
    "UsageLimitException",
    "ProviderAuthException",
    "BudgetExceededException",
    "SelectionExpiredException",
    "CacheException",
    "ConfigurationException"
]
