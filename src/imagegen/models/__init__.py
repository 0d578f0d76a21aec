"""ORM models package -- re-exports all models and the Base class."""

from imagegen.models.base import Base
from imagegen.models.user import (
    BonusClaim,
    CheckInReward,
    CreditTransaction,
    UserProfile,
)
from imagegen.models.image import ImageRecord
from imagegen.models.billing import (
    Order,
    PaymentPlan,
    ProcessedWebhook,
    Referral,
    Subscription,
)

__all__ = [
    "Base",
    "UserProfile",
    "CheckInReward",
    "CreditTransaction",
    "BonusClaim",
    "ImageRecord",
    "PaymentPlan",
    "Order",
    "Subscription",
    "Referral",
    "ProcessedWebhook",
]
