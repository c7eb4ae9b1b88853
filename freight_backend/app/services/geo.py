"""
Geographic helpers: great-circle distance and the pickup grid.
"""

import math
from typing import List, Optional, Tuple

# Mean kilometres per degree of latitude
KM_PER_DEGREE = 111.32

# Above this many cells the grid prefilter costs more than it saves
MAX_BUCKETS_PER_QUERY = 400


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    # Radius of Earth in kilometers
    R = 6371.0

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def validate_coordinates(lat: float, lng: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def geo_bucket(lat: float, lng: float, cell_degrees: float) -> str:
    """Grid cell label of a point, e.g. ``"37:145"`` for 0.5 degree cells."""
    col = math.floor(lng / cell_degrees)
    columns = _grid_columns(cell_degrees)
    if columns is not None:
        col %= columns
    return f"{math.floor(lat / cell_degrees)}:{col}"


def buckets_within(lat: float, lng: float, radius_km: float, cell_degrees: float) -> List[str]:
    """
    Every grid cell that may hold a point within ``radius_km`` of (lat, lng).

    Column indices wrap at the antimeridian, so a caller at 179.9 also
    gets the cells just east of -180.

    Returns an empty list when the radius spans too many cells to be a
    useful prefilter, or when it crosses the antimeridian on a grid that
    does not tile 360 degrees; callers then fall back to an exact scan.
    """
    lat_span = radius_km / KM_PER_DEGREE
    cos_lat = max(math.cos(math.radians(lat)), 0.01)
    lng_span = min(radius_km / (KM_PER_DEGREE * cos_lat), 180.0)

    row_lo, row_hi = _cell_range(lat - lat_span, lat + lat_span, cell_degrees)
    col_lo, col_hi = _cell_range(lng - lng_span, lng + lng_span, cell_degrees)

    if (row_hi - row_lo + 1) * (col_hi - col_lo + 1) > MAX_BUCKETS_PER_QUERY:
        return []

    columns = _grid_columns(cell_degrees)
    if columns is None:
        if lng - lng_span < -180.0 or lng + lng_span > 180.0:
            return []
        cols = range(col_lo, col_hi + 1)
    else:
        cols = sorted({col % columns for col in range(col_lo, col_hi + 1)})

    return [f"{row}:{col}" for row in range(row_lo, row_hi + 1) for col in cols]


def _cell_range(low: float, high: float, cell_degrees: float) -> Tuple[int, int]:
    return math.floor(low / cell_degrees), math.floor(high / cell_degrees)


def _grid_columns(cell_degrees: float) -> Optional[int]:
    """Number of columns around the globe, or None if the cells do not tile 360 degrees."""
    columns = 360.0 / cell_degrees
    if abs(columns - round(columns)) > 1e-9:
        return None
    return int(round(columns))
