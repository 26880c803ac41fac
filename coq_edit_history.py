"""Append-only record of accepted rewrite pairs."""

import time
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class EditRecord:
    lhs: str
    rhs: str
    timestamp: int  # epoch milliseconds

    def to_dict(self) -> dict:
        return {"lhs": self.lhs, "rhs": self.rhs, "timestamp": self.timestamp}


class EditHistoryLedger:
    """Insertion-ordered, deduplicated by (lhs, rhs); the first timestamp wins."""

    def __init__(self):
        self._records: list[EditRecord] = []
        self._seen: set[tuple[str, str]] = set()

    def append(self, lhs: str, rhs: str, timestamp: Optional[int] = None) -> bool:
        """Record an edit. Returns False if the pair was already present."""
        key = (lhs, rhs)
        if key in self._seen:
            return False
        if timestamp is None:
            timestamp = int(time.time() * 1000)
        self._seen.add(key)
        self._records.append(EditRecord(lhs, rhs, int(timestamp)))
        return True

    def all(self) -> tuple[EditRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[EditRecord]:
        return iter(tuple(self._records))

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self._records]

    @classmethod
    def from_list(cls, data: list[dict]) -> "EditHistoryLedger":
        ledger = cls()
        for item in data:
            ledger.append(item["lhs"], item["rhs"], item.get("timestamp"))
        return ledger
