"""Tier catalog: subscription tiers, prices and usage limits.

The catalog is read-only at runtime. ``TierCatalog.reload`` validates a
complete replacement table and swaps it in one assignment, so readers see
either the old table or the new one, never a mix.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from wayfare.billing.exceptions import TierNotFoundError
from wayfare.core.exceptions import ConfigurationError

UNLIMITED = -1


class SubscriptionTier(str, enum.Enum):
    """Subscription tier enum, declared in hierarchy order."""

    FREE = "free"
    EXPLORER = "explorer"
    TRAVELER = "traveler"
    ENTERPRISE = "enterprise"


class BillingInterval(str, enum.Enum):
    """Billing interval enum."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def provider_interval(self) -> str:
        """Recurring interval name used by the provider."""
        return "year" if self is BillingInterval.YEARLY else "month"


class LimitKind(str, enum.Enum):
    """Usage limits carried by every tier."""

    EXPERIENCES = "experiences"
    STORAGE = "storage"
    EXPORTS = "exports"


class TierComparison(str, enum.Enum):
    """Direction of a tier change."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    EQUAL = "equal"


TIER_HIERARCHY: tuple[SubscriptionTier, ...] = tuple(SubscriptionTier)
LOWEST_TIER = TIER_HIERARCHY[0]


@dataclass(frozen=True)
class TierLimits:
    """Usage limits for a tier. -1 means unlimited."""

    experiences: int
    storage: int  # bytes
    exports: int

    def get(self, kind: LimitKind) -> int:
        return int(getattr(self, kind.value))


@dataclass(frozen=True)
class TierDefinition:
    """A subscription plan with prices in minor units (cents)."""

    id: SubscriptionTier
    name: str
    monthly_price: int
    yearly_price: int
    limits: TierLimits
    features: tuple[str, ...] = ()
    provider_product_id: str | None = None
    provider_price_ids: Mapping[BillingInterval, str] = field(default_factory=dict)

    def price_for(self, interval: BillingInterval) -> int:
        """Price charged per billing interval."""
        if interval is BillingInterval.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def monthly_equivalent(self, interval: BillingInterval) -> int:
        """Price per month for the given interval, rounded down to a whole cent."""
        if interval is BillingInterval.YEARLY:
            return self.yearly_price // 12
        return self.monthly_price


@dataclass(frozen=True)
class UsageCheck:
    """Outcome of a usage limit check."""

    allowed: bool
    limit: int
    remaining: int

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED


DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition(
        id=SubscriptionTier.FREE,
        name="Free",
        monthly_price=0,
        yearly_price=0,
        limits=TierLimits(experiences=5, storage=50 * 1024 * 1024, exports=1),
        features=("Basic experience sharing", "5 experiences", "Community support"),
        provider_product_id="prod_free",
    ),
    TierDefinition(
        id=SubscriptionTier.EXPLORER,
        name="Explorer",
        monthly_price=999,
        yearly_price=9990,
        limits=TierLimits(experiences=50, storage=500 * 1024 * 1024, exports=10),
        features=(
            "Advanced features",
            "50 experiences",
            "Email support",
            "Export capabilities",
        ),
        provider_product_id="prod_explorer",
    ),
    TierDefinition(
        id=SubscriptionTier.TRAVELER,
        name="Traveler",
        monthly_price=1999,
        yearly_price=19990,
        limits=TierLimits(experiences=UNLIMITED, storage=5 * 1024**3, exports=UNLIMITED),
        features=(
            "Premium features",
            "Unlimited experiences",
            "Priority support",
            "Advanced analytics",
        ),
        provider_product_id="prod_traveler",
    ),
    TierDefinition(
        id=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        monthly_price=4999,
        yearly_price=49990,
        limits=TierLimits(experiences=UNLIMITED, storage=UNLIMITED, exports=UNLIMITED),
        features=(
            "All features",
            "Custom limits",
            "Dedicated support",
            "API access",
            "White-label options",
        ),
        provider_product_id="prod_enterprise",
    ),
)


def parse_tier(value: SubscriptionTier | str) -> SubscriptionTier:
    """Coerce a tier id to the enum.

    Raises:
        TierNotFoundError: If the value names no tier
    """
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier(value)
    except ValueError:
        raise TierNotFoundError(resource_type="tier", resource_id=str(value)) from None


def validate_tier(definition: TierDefinition) -> list[str]:
    """Return the configuration problems of a tier definition."""
    errors: list[str] = []
    if definition.monthly_price < 0:
        errors.append("Monthly price cannot be negative")
    if definition.yearly_price < 0:
        errors.append("Yearly price cannot be negative")
    for kind in LimitKind:
        if definition.limits.get(kind) < UNLIMITED:
            errors.append(
                f"{kind.value.capitalize()} limit must be -1 (unlimited) or a non-negative number"
            )
    return errors


class TierCatalog:
    """Read-only lookup over tier definitions."""

    def __init__(self, definitions: Iterable[TierDefinition] = DEFAULT_TIERS) -> None:
        self._tiers: Mapping[SubscriptionTier, TierDefinition] = self._build(definitions)

    @staticmethod
    def _build(
        definitions: Iterable[TierDefinition],
    ) -> Mapping[SubscriptionTier, TierDefinition]:
        table: dict[SubscriptionTier, TierDefinition] = {}
        problems: dict[str, list[str]] = {}
        for definition in definitions:
            errors = validate_tier(definition)
            if errors:
                problems[definition.id.value] = errors
            table[definition.id] = definition

        missing = [tier.value for tier in SubscriptionTier if tier not in table]
        if missing:
            problems["catalog"] = [f"Missing tiers: {', '.join(missing)}"]
        if problems:
            raise ConfigurationError("Invalid tier catalog", details=problems)

        return MappingProxyType(table)

    def reload(self, definitions: Iterable[TierDefinition]) -> None:
        """Replace the whole catalog atomically."""
        self._tiers = self._build(definitions)

    def with_price_ids(self, price_ids: Mapping[str, str]) -> TierCatalog:
        """Return a catalog with configured provider price ids.

        Args:
            price_ids: Mapping of "<tier>:<interval>" to provider price id
        """
        assigned: dict[SubscriptionTier, dict[BillingInterval, str]] = {}
        for key, price_id in price_ids.items():
            tier_value, _, interval_value = key.partition(":")
            try:
                tier = SubscriptionTier(tier_value)
                interval = BillingInterval(interval_value)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid tier price id key: {key!r}",
                    details={"expected": "<tier>:<interval>"},
                ) from None
            assigned.setdefault(tier, {})[interval] = price_id

        definitions = [
            TierDefinition(
                id=definition.id,
                name=definition.name,
                monthly_price=definition.monthly_price,
                yearly_price=definition.yearly_price,
                limits=definition.limits,
                features=definition.features,
                provider_product_id=definition.provider_product_id,
                provider_price_ids={
                    **definition.provider_price_ids,
                    **assigned.get(definition.id, {}),
                },
            )
            for definition in self
        ]
        return TierCatalog(definitions)

    def __iter__(self):
        tiers = self._tiers
        return (tiers[tier] for tier in TIER_HIERARCHY)

    def tier_of(self, tier: SubscriptionTier | str) -> TierDefinition:
        """Look up a tier definition.

        Raises:
            TierNotFoundError: If the tier is unknown
        """
        return self._tiers[parse_tier(tier)]

    @staticmethod
    def compare(current: SubscriptionTier | str, new: SubscriptionTier | str) -> TierComparison:
        """Direction of moving from ``current`` to ``new`` in the hierarchy."""
        current_rank = TIER_HIERARCHY.index(parse_tier(current))
        new_rank = TIER_HIERARCHY.index(parse_tier(new))
        if new_rank > current_rank:
            return TierComparison.UPGRADE
        if new_rank < current_rank:
            return TierComparison.DOWNGRADE
        return TierComparison.EQUAL

    def limit_for(self, tier: SubscriptionTier | str, kind: LimitKind | str) -> int | None:
        """Numeric limit for a tier, or None when unlimited."""
        limit = self.tier_of(tier).limits.get(LimitKind(kind))
        return None if limit == UNLIMITED else limit

    def check_usage_limit(
        self,
        tier: SubscriptionTier | str,
        kind: LimitKind | str,
        current_usage: int,
    ) -> UsageCheck:
        """Check whether one more unit of usage fits in the tier's limit."""
        limit = self.tier_of(tier).limits.get(LimitKind(kind))
        if limit == UNLIMITED:
            return UsageCheck(allowed=True, limit=UNLIMITED, remaining=UNLIMITED)
        return UsageCheck(
            allowed=current_usage < limit,
            limit=limit,
            remaining=max(0, limit - current_usage),
        )


def can_access(user_tier: SubscriptionTier | str, required_tier: SubscriptionTier | str) -> bool:
    """Whether a subscriber on ``user_tier`` is entitled to ``required_tier`` features."""
    return TierCatalog.compare(required_tier, user_tier) is not TierComparison.DOWNGRADE


def format_price(price_in_cents: int, currency: str = "USD") -> str:
    """Format a minor-unit amount for display, e.g. 1999 -> '$19.99'."""
    symbol = {"USD": "$", "EUR": "€", "GBP": "£"}.get(currency.upper(), "")
    sign = "-" if price_in_cents < 0 else ""
    amount = f"{abs(price_in_cents) / 100:,.2f}"
    if symbol:
        return f"{sign}{symbol}{amount}"
    return f"{sign}{amount} {currency.upper()}"


def tier_for_amount(unit_amount: int | None) -> SubscriptionTier:
    """Infer a tier from a monthly price when no tier metadata is available."""
    amount = unit_amount or 0
    if amount == 0:
        return SubscriptionTier.FREE
    if amount <= 999:
        return SubscriptionTier.EXPLORER
    if amount <= 1999:
        return SubscriptionTier.TRAVELER
    return SubscriptionTier.ENTERPRISE
