"""Subscription billing lifecycle engine."""

from wayfare.billing.schemas import BillingResult, IngestResult, IngestStatus
from wayfare.billing.service import BillingEngine
from wayfare.billing.tiers import BillingInterval, SubscriptionTier, TierCatalog

__all__ = [
    "BillingEngine",
    "BillingInterval",
    "BillingResult",
    "IngestResult",
    "IngestStatus",
    "SubscriptionTier",
    "TierCatalog",
]
