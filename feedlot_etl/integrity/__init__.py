"""
Referential integrity: dimension lookup and resolution.
"""

from .dimension_lookup import StoreDimensionLookup
from .resolver import DimensionResolver

__all__ = [
    "DimensionResolver",
    "StoreDimensionLookup",
]
