"""Square webhook payload extraction and signature checks."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Mapping


COMPLETED = "COMPLETED"


@dataclass(slots=True)
class SquareLineItem:
    name: str
    quantity: int
    catalog_object_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity, "catalog_object_id": self.catalog_object_id}


@dataclass(slots=True)
class SquarePayment:
    id: str | None
    status: str | None
    location_id: str | None
    customer_id: str | None
    order_id: str | None
    amount_cents: int | None
    line_items: list[SquareLineItem] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED


@dataclass(slots=True)
class SquareRefund:
    id: str | None
    status: str | None
    payment_id: str | None
    location_id: str | None
    amount_cents: int | None

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED


def event_external_id(payload: Mapping[str, Any]) -> str | None:
    value = payload.get("event_id") or payload.get("id")
    return str(value) if value else None


def event_type(payload: Mapping[str, Any]) -> str | None:
    value = payload.get("type") or payload.get("event_type")
    return str(value) if value else None


def _data_object(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return {}
    obj = data.get("object")
    return obj if isinstance(obj, Mapping) else {}


def _money(value: Any) -> int | None:
    if not isinstance(value, Mapping):
        return None
    amount = value.get("amount")
    if isinstance(amount, bool) or amount is None:
        return None
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        return None
    return amount or None


def _quantity(raw: Any) -> int:
    if raw is None:
        return 1
    try:
        return max(int(float(raw)), 0)
    except (TypeError, ValueError):
        return 0


def _line_items(payment: Mapping[str, Any]) -> list[SquareLineItem]:
    raw_items = payment.get("line_items") or payment.get("itemizations") or []
    items: list[SquareLineItem] = []
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        items.append(
            SquareLineItem(
                name=str(raw.get("name") or "Unknown"),
                quantity=_quantity(raw.get("quantity")),
                catalog_object_id=raw.get("catalog_object_id"),
            )
        )
    return items


def extract_payment(payload: Mapping[str, Any]) -> SquarePayment | None:
    """Return the payment under ``data.object.payment`` or None when absent."""

    payment = _data_object(payload).get("payment")
    if not isinstance(payment, Mapping):
        return None
    amount = _money(payment.get("amount_money"))
    if amount is None:
        amount = _money(payment.get("approved_money"))
    return SquarePayment(
        id=payment.get("id"),
        status=payment.get("status"),
        location_id=payment.get("location_id"),
        customer_id=payment.get("customer_id"),
        order_id=payment.get("order_id"),
        amount_cents=amount,
        line_items=_line_items(payment),
    )


def extract_refund(payload: Mapping[str, Any]) -> SquareRefund | None:
    refund = _data_object(payload).get("refund")
    if not isinstance(refund, Mapping):
        return None
    return SquareRefund(
        id=refund.get("id"),
        status=refund.get("status"),
        payment_id=refund.get("payment_id"),
        location_id=refund.get("location_id"),
        amount_cents=_money(refund.get("amount_money")),
    )


def compute_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    *,
    signature_key: str,
    notification_url: str,
    body: bytes,
    signature: str | None,
) -> bool:
    if not signature:
        return False
    expected = compute_signature(signature_key, notification_url, body)
    return hmac.compare_digest(expected, signature)


__all__ = [
    "SquareLineItem",
    "SquarePayment",
    "SquareRefund",
    "compute_signature",
    "event_external_id",
    "event_type",
    "extract_payment",
    "extract_refund",
    "verify_signature",
]
