from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"

    def __str__(self):
        return self.value


class VehicleClass(str, Enum):
    STANDARD = "standard"
    COMPACT = "compact"
    SUV = "suv"
    TRUCK = "truck"
    LUXURY = "luxury"
    OVERSIZED = "oversized"
    EV = "ev"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    def __str__(self):
        return self.value


LOYALTY_BOOKING_THRESHOLDS = (
    (50, "platinum"),
    (25, "gold"),
    (10, "silver"),
    (3, "bronze"),
)


class LoyaltyTier(str, Enum):
    """Ordered loyalty ladder, lowest first."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"

    @property
    def rank(self) -> int:
        return list(LoyaltyTier).index(self)

    def __lt__(self, other):
        if not isinstance(other, LoyaltyTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, LoyaltyTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, LoyaltyTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, LoyaltyTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_booking_count(cls, completed_bookings: int):
        """Tier earned by a customer's completed bookings, or None below bronze."""
        for threshold, value in LOYALTY_BOOKING_THRESHOLDS:
            if completed_bookings >= threshold:
                return cls(value)
        return None

    def __str__(self):
        return self.value


class FactorKind(str, Enum):
    SURCHARGE = "surcharge"
    DISCOUNT = "discount"
    DEGRESSION = "degression"

    def __str__(self):
        return self.value


class QuoteOutcome(str, Enum):
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    CONFIG_ERROR = "config_error"
    CONFLICT = "conflict"
    TRANSIENT_ERROR = "transient_error"
    DUPLICATE_QUOTE = "duplicate_quote"

    def __str__(self):
        return self.value
