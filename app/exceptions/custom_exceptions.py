class FlightTrackerException(Exception):
    """Base exception for all flight tracker errors"""
    pass


class ProviderException(FlightTrackerException):
    """Transient flight data provider failure (network, payload, non-2xx)"""
    pass


class UsageLimitException(ProviderException):
    """Raised when the provider itself reports its quota as exhausted"""
    pass


class ProviderAuthException(FlightTrackerException):
    """Provider rejected our credentials or plan; retrying will not help"""
    pass


class BudgetExceededException(FlightTrackerException):
    """Raised when a user lookup cannot be served within the monthly budget"""
    pass


class SelectionExpiredException(FlightTrackerException):
    """Raised when a pending multi-candidate selection is missing or expired"""
    pass


class CacheException(FlightTrackerException):
    """Exception raised for cache operation errors"""
    pass


class ConfigurationException(FlightTrackerException):
    """Exception raised for invalid or missing configuration"""
    pass
