from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


@dataclass
class SettlementSnapshot:
    totals: Dict[str, int]
    errors_by_code: Dict[str, int]
    last_sweep_at: datetime | None
    last_sweep: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": dict(self.totals),
            "errors_by_code": dict(self.errors_by_code),
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "last_sweep": dict(self.last_sweep),
        }


class SettlementObservabilityStore:
    """Counters for settlement sweeps and individual payouts."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._totals: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)
        self._last_sweep_at: datetime | None = None
        self._last_sweep: Dict[str, int] = {}

    def record_settlement(self, *, settled: bool, credits: int = 0) -> None:
        with self._lock:
            if settled:
                self._totals["settled"] += 1
                self._totals["credits"] += credits
            else:
                self._totals["noop"] += 1

    def record_error(self, code: str) -> None:
        with self._lock:
            self._totals["errors"] += 1
            self._errors[code or "unknown"] += 1

    def record_sweep(self, *, scanned: int, settled: int, noop: int, errors: int) -> None:
        with self._lock:
            self._totals["sweeps"] += 1
            self._last_sweep_at = datetime.now(timezone.utc)
            self._last_sweep = {"scanned": scanned, "settled": settled, "noop": noop, "errors": errors}

    def snapshot(self) -> SettlementSnapshot:
        with self._lock:
            return SettlementSnapshot(
                totals=dict(self._totals),
                errors_by_code=dict(self._errors),
                last_sweep_at=self._last_sweep_at,
                last_sweep=dict(self._last_sweep),
            )

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            self._errors.clear()
            self._last_sweep_at = None
            self._last_sweep = {}


_SETTLEMENT_STORE = SettlementObservabilityStore()


def get_settlement_store() -> SettlementObservabilityStore:
    return _SETTLEMENT_STORE


__all__ = ["SettlementObservabilityStore", "SettlementSnapshot", "get_settlement_store"]
