from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    webhooks: Dict[str, int]
    auto_confirm: Dict[str, int]
    redemptions: Dict[str, int]
    ledger: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "webhooks": dict(self.webhooks),
            "autoConfirm": dict(self.auto_confirm),
            "redemptions": dict(self.redemptions),
            "ledger": dict(self.ledger),
        }


class LoyaltyObservabilityStore:
    """Collect ledger and redemption pipeline telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._webhooks: Dict[str, int] = defaultdict(int)
        self._auto_confirm: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._ledger: Dict[str, int] = defaultdict(int)

    def record_webhook_outcome(self, status: str, reason: str | None = None) -> None:
        with self._lock:
            self._webhooks[status] += 1
            if reason:
                self._webhooks[f"reason:{reason}"] += 1

    def record_webhook_duplicate(self) -> None:
        with self._lock:
            self._webhooks["duplicates"] += 1

    def record_auto_confirm(self, outcome: str) -> None:
        with self._lock:
            self._auto_confirm[outcome] += 1

    def record_redemption_transition(self, status: str, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._redemptions[status] += count

    def record_ledger_write(self, kind: str) -> None:
        with self._lock:
            self._ledger[kind] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                webhooks=dict(self._webhooks),
                auto_confirm=dict(self._auto_confirm),
                redemptions=dict(self._redemptions),
                ledger=dict(self._ledger),
            )

    def reset(self) -> None:
        with self._lock:
            self._webhooks.clear()
            self._auto_confirm.clear()
            self._redemptions.clear()
            self._ledger.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
