"""
Converters package for transforming data between different API formats.
"""
from app.services.converters.aviationstack_converter import AviationStackConverter

__all__ = ["AviationStackConverter"]
