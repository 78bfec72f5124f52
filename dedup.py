import logging
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_RADIUS_KM = 0.05  # 50 meters


class DedupGate:
    """Suppress candidates that sit on top of an already known or verified site.

    ``query`` is the store's ``exists_nearby_confirmed_site(lat, lng, radius_km)``.
    Runs once per accepted detection, not once per tile.
    """

    def __init__(self, query: Callable[[float, float, float], bool], radius_km: float = DEFAULT_DEDUP_RADIUS_KM) -> None:
        if radius_km <= 0:
            raise ValueError("radius_km must be positive")
        self.query = query
        self.radius_km = radius_km
        self.suppressed = 0

    def is_duplicate(self, lat: float, lng: float) -> bool:
        hit = bool(self.query(lat, lng, self.radius_km))
        if hit:
            self.suppressed += 1
            logger.info("Skipping duplicate near %.6f, %.6f (within %.0f m)", lat, lng, self.radius_km * 1000)
        return hit
