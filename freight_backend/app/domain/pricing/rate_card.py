"""
Rate Card Pricing.

Default fare function for broadcasts: a per-class base plus per-km rate,
with a surcharge for urgent loads. Deployments inject their own pricing
function through the registry.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Protocol

from freight_backend.app.models.dispatch_enums import VehicleClass


class PricingFunction(Protocol):
    def quote(self, distance_km: float, vehicle_class: VehicleClass, urgent: bool) -> float:
        ...


# (base fare, rate per km)
DEFAULT_RATES: Dict[VehicleClass, tuple] = {
    VehicleClass.MINI: (Decimal("300"), Decimal("12")),
    VehicleClass.LCV: (Decimal("500"), Decimal("18")),
    VehicleClass.OPEN: (Decimal("800"), Decimal("25")),
    VehicleClass.CONTAINER: (Decimal("1200"), Decimal("32")),
    VehicleClass.TRAILER: (Decimal("2000"), Decimal("45")),
    VehicleClass.TIPPER: (Decimal("1000"), Decimal("30")),
    VehicleClass.TANKER: (Decimal("1500"), Decimal("38")),
    VehicleClass.BULKER: (Decimal("1800"), Decimal("40")),
}

URGENT_MULTIPLIER = Decimal("1.2")


class RateCardPricing:

    def __init__(self, rates: Dict[VehicleClass, tuple] = None, urgent_multiplier: Decimal = URGENT_MULTIPLIER):
        self.rates = rates or DEFAULT_RATES
        self.urgent_multiplier = urgent_multiplier

    def quote(self, distance_km: float, vehicle_class: VehicleClass, urgent: bool) -> float:
        """Fare per truck, rounded to two decimals."""
        base, per_km = self.rates[VehicleClass(vehicle_class)]
        fare = base + per_km * Decimal(str(distance_km))
        if urgent:
            fare *= self.urgent_multiplier
        return float(fare.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
