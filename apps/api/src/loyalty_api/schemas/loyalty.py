from datetime import datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from loyalty_api.models.ledger import LedgerEntryKind
from loyalty_api.models.redemption import RedemptionCancelReason, RedemptionStatus

# meta: schema: loyalty-ledger


class RedemptionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: UUID = Field(..., alias="merchantId")
    reward_id: UUID = Field(..., alias="rewardId")


class RedemptionVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class RedemptionConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_payment_id: str | None = Field(None, alias="providerPaymentId")
    provider_order_id: str | None = Field(None, alias="providerOrderId")


class RedemptionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    customer_id: UUID = Field(..., alias="customerId")
    merchant_id: UUID = Field(..., alias="merchantId")
    reward_id: UUID = Field(..., alias="rewardId")
    status: RedemptionStatus
    expires_at: datetime = Field(..., alias="expiresAt")
    locked_at: datetime | None = Field(None, alias="lockedAt")
    confirmed_at: datetime | None = Field(None, alias="confirmedAt")
    canceled_at: datetime | None = Field(None, alias="canceledAt")
    cancel_reason: RedemptionCancelReason | None = Field(None, alias="cancelReason")
    provider_payment_id: str | None = Field(None, alias="providerPaymentId")
    provider_order_id: str | None = Field(None, alias="providerOrderId")
    points_deducted: int | None = Field(None, alias="pointsDeducted")
    created_at: datetime | None = Field(None, alias="createdAt")


class IssuedRedemptionResponse(RedemptionResponse):
    """Returned to the owning customer only; carries the codes to present at the till."""

    token: str
    pin_code: str = Field(..., alias="pinCode")


class BalanceResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: UUID = Field(..., alias="customerId")
    merchant_id: UUID = Field(..., alias="merchantId")
    points: int


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    kind: LedgerEntryKind
    points: int
    external_ref: str | None = Field(None, alias="externalRef")
    redemption_id: UUID | None = Field(None, alias="redemptionId")
    provider_payment_id: str | None = Field(None, alias="providerPaymentId")
    metadata: dict = Field(
        default_factory=dict,
        alias="metadata",
        validation_alias=AliasChoices("metadata_json", "metadata"),
    )
    created_at: datetime = Field(..., alias="createdAt")


class LedgerHistoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    balance: int
    entries: list[LedgerEntryResponse] = Field(default_factory=list)
