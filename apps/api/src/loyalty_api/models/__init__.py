from .ledger import CustomerBalance, LedgerEntry, LedgerEntryKind  # noqa: F401
from .merchant import Customer, Merchant, MerchantLocation, POSProviderEnum, ProviderCustomerLink  # noqa: F401
from .redemption import Redemption, RedemptionCancelReason, RedemptionStatus  # noqa: F401
from .reward import (  # noqa: F401
    CustomerItemProgress,
    EarnTypeEnum,
    Reward,
    RewardProgram,
    RewardTypeEnum,
)
from .webhook_event import WebhookEvent, WebhookEventStatus, WebhookProviderEnum  # noqa: F401
