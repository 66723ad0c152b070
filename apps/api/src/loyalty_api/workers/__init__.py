from .redemption_expiry import RedemptionExpiryWorker
from .webhook_drain import WebhookEventDrainWorker

__all__ = ["RedemptionExpiryWorker", "WebhookEventDrainWorker"]
