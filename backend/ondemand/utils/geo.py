from math import asin, cos, radians, sin, sqrt

from ondemand.errors import ValidationError

EARTH_RADIUS_KM = 6371.0


def calculate_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle (haversine) distance in km between two coordinate pairs."""
    phi1 = radians(lat1)
    phi2 = radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = radians(lng2 - lng1)
    a = sin(d_phi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(d_lambda / 2) ** 2
    # Rounding can push a marginally above 1 for antipodal points
    return EARTH_RADIUS_KM * 2 * asin(sqrt(min(1.0, a)))


def validate_coordinates(lat: float, lng: float) -> None:
    """Raise ValidationError unless lat is in [-90, 90] and lng in [-180, 180]."""
    if lat is None or lng is None:
        raise ValidationError("Latitude and longitude are required")
    if not -90 <= lat <= 90:
        raise ValidationError(f"Latitude must be between -90 and 90, got {lat}")
    if not -180 <= lng <= 180:
        raise ValidationError(f"Longitude must be between -180 and 180, got {lng}")
