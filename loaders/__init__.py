"""
Data loaders for the Project Map Engine.

Includes:
- Geocoding of project addresses (Nominatim)
"""

from loaders.geocoder import Geocoder, GeocodedLocation, GeocodingCache

__all__ = [
    "Geocoder",
    "GeocodedLocation",
    "GeocodingCache",
]
