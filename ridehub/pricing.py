"""
Fare quotes.

``calculate_quote`` is pure: region pair, distance and pricing config in,
quote out. ``QuoteService`` wires it to the collaborators that classify a
location into a region, estimate trip distance and look up matrix prices.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol, Sequence, Tuple

from sqlmodel import select

from .config import PricingConfig
from .database import Store
from .errors import InvalidLocation
from .models import LocationKeyword, PriceRule, Region

logger = logging.getLogger(__name__)

# tier boundaries in km
FREE_KM = 10
TIER1_END_KM = 50
TIER2_END_KM = 100


@dataclass(frozen=True)
class Quote:
    start_region: Region
    end_region: Region
    base_price: int
    order_fee: int
    total_price: int
    currency: str
    is_estimate: bool
    pricing_system: str
    distance_km: Optional[float] = None
    surcharges: Dict[str, int] = field(default_factory=dict)
    note: str = ""


def mileage_cost(km: float, cfg: PricingConfig) -> float:
    if km <= FREE_KM:
        return 0
    if km <= TIER1_END_KM:
        return (km - FREE_KM) * cfg.tier1_rate
    tier1_full = (TIER1_END_KM - FREE_KM) * cfg.tier1_rate
    if km <= TIER2_END_KM:
        return tier1_full + (km - TIER1_END_KM) * cfg.tier2_rate
    tier2_full = (TIER2_END_KM - TIER1_END_KM) * cfg.tier2_rate
    return tier1_full + tier2_full + (km - TIER2_END_KM) * cfg.tier3_rate


def calculate_quote(
    start: Region,
    end: Region,
    distance_km: Optional[float],
    cfg: PricingConfig,
    matrix_rule: Optional[PriceRule] = None,
) -> Quote:
    if matrix_rule is not None:
        total = math.ceil(matrix_rule.base_price)
        system = "matrix"
    else:
        if distance_km is None:
            raise InvalidLocation("distance is required without a matrix price")
        total = math.ceil(round(max(cfg.min_spend, mileage_cost(distance_km, cfg)), 6))
        system = "distance"
    return Quote(
        start_region=start,
        end_region=end,
        base_price=total,
        # products of float rates can land a hair above a whole number; round before ceil
        order_fee=math.ceil(round(total * cfg.driver_fee_percentage, 6)),
        total_price=total,
        currency=cfg.currency,
        is_estimate=matrix_rule is None,
        pricing_system=system,
        distance_km=None if matrix_rule is not None else distance_km,
    )


class RegionResolver(Protocol):
    def resolve(self, location: Mapping) -> Region: ...


class DistanceEstimator(Protocol):
    def estimate_km(self, pickup: Mapping, dropoff: Mapping) -> float: ...


class KeywordRegionResolver:
    """An explicit ``regionId`` wins; otherwise the first keyword found in the
    place name or address decides, longest keywords first."""

    def __init__(self, keywords: Sequence[Tuple[str, Region]]) -> None:
        self.keywords = sorted(
            ((k.strip().lower(), r) for k, r in keywords if k.strip()),
            key=lambda kr: len(kr[0]),
            reverse=True,
        )

    @classmethod
    def from_store(cls, store: Store) -> "KeywordRegionResolver":
        rows = store.read(lambda s: s.exec(select(LocationKeyword)).all())
        return cls([(row.keyword, row.region_id) for row in rows])

    def resolve(self, location: Mapping) -> Region:
        explicit = location.get("regionId")
        if explicit:
            try:
                return Region(explicit)
            except ValueError:
                raise InvalidLocation(f"unknown regionId {explicit!r}") from None
        text = f"{location.get('placeName') or ''} {location.get('address') or ''}".lower()
        for keyword, region in self.keywords:
            if keyword in text:
                return region
        return Region.UNKNOWN


class HaversineDistanceEstimator:
    EARTH_RADIUS_KM = 6371.0

    def __init__(self, road_factor: float = 1.3) -> None:
        # straight-line distance under-counts real roads
        self.road_factor = road_factor

    def estimate_km(self, pickup: Mapping, dropoff: Mapping) -> float:
        try:
            lat1, lon1 = float(pickup["latitude"]), float(pickup["longitude"])
            lat2, lon2 = float(dropoff["latitude"]), float(dropoff["longitude"])
        except (KeyError, TypeError, ValueError):
            raise InvalidLocation("pickup and dropoff need latitude/longitude")
        p1, p2 = math.radians(lat1), math.radians(lat2)
        dphi = math.radians(lat2 - lat1)
        dlmb = math.radians(lon2 - lon1)
        a = math.sin(dphi / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlmb / 2) ** 2
        km = 2 * self.EARTH_RADIUS_KM * math.asin(math.sqrt(a))
        return round(km * self.road_factor, 2)


class QuoteService:
    def __init__(
        self,
        store: Store,
        cfg: PricingConfig,
        resolver: Optional[RegionResolver] = None,
        estimator: Optional[DistanceEstimator] = None,
    ) -> None:
        self.store = store
        self.cfg = cfg
        self.resolver = resolver
        self.estimator = estimator or HaversineDistanceEstimator()

    def matrix_rule(self, start: Region, end: Region) -> Optional[PriceRule]:
        return self.store.read(
            lambda s: s.exec(
                select(PriceRule).where(PriceRule.start_region == start, PriceRule.end_region == end)
            ).first()
        )

    def quote(self, pickup: Mapping, dropoff: Mapping, date: str = "") -> Quote:
        resolver = self.resolver or KeywordRegionResolver.from_store(self.store)
        start = resolver.resolve(pickup)
        end = resolver.resolve(dropoff)
        rule = self.matrix_rule(start, end)
        km = None if rule is not None else self.estimator.estimate_km(pickup, dropoff)
        quote = calculate_quote(start, end, km, self.cfg, rule)
        logger.info(
            "quote %s -> %s (%s): %s %s",
            start.value, end.value, date or "-", quote.total_price, quote.pricing_system,
        )
        return quote
