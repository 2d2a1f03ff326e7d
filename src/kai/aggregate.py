from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from threading import Lock
from typing import Dict, Iterable, Iterator, List, Optional

from .kaiClasses import CountKey


class CountTable(Mapping):
    """
    Finalised, read-only counts keyed by region id (bulk) or (region id, barcode).

    Only keys that were credited at least once are present; use ``get(key, 0)``.
    ``skipped`` holds the diagnostic per-reason counts of records not credited.
    """

    def __init__(self, counts: Optional[Dict[CountKey, int]] = None, skipped: Optional[Counter] = None):
        self._counts: Dict[CountKey, int] = dict(counts or {})
        self.skipped: Counter = Counter(skipped or {})

    def __getitem__(self, key: CountKey) -> int:
        return self._counts[key]

    def __iter__(self) -> Iterator[CountKey]:
        return iter(self._counts)

    def __len__(self) -> int:
        return len(self._counts)

    def __repr__(self) -> str:
        return f"CountTable({self._counts!r})"

    @property
    def single_cell(self) -> bool:
        return any(isinstance(k, tuple) for k in self._counts)

    def total(self) -> int:
        return sum(self._counts.values())

    def regions(self) -> List[str]:
        return sorted({k[0] if isinstance(k, tuple) else k for k in self._counts})

    def barcodes(self) -> List[str]:
        return sorted({k[1] for k in self._counts if isinstance(k, tuple)})

    def collapse_barcodes(self) -> "CountTable":
        """Sum over the barcode axis, giving per-region (bulk-shaped) counts."""
        out: Dict[str, int] = {}
        for k, v in self._counts.items():
            region = k[0] if isinstance(k, tuple) else k
            out[region] = out.get(region, 0) + v
        return CountTable(out, self.skipped)


class Aggregator:
    """
    The single mutation point of a counting run.

    ``credit`` adds one to a key; ``snapshot`` freezes the aggregator and hands
    back the CountTable. Credits after the snapshot are refused.
    """

    def __init__(self, synchronized: bool = False):
        self._counts: Dict[CountKey, int] = {}
        self._skipped: Counter = Counter()
        self._lock: Optional[Lock] = Lock() if synchronized else None
        self._final: Optional[CountTable] = None

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def credit(self, key: CountKey) -> None:
        if self._final is not None:
            raise RuntimeError("Aggregator is finalized; no further credits allowed")
        if self._lock is not None:
            with self._lock:
                self._counts[key] = self._counts.get(key, 0) + 1
        else:
            self._counts[key] = self._counts.get(key, 0) + 1

    def skip(self, reason: str) -> None:
        if self._final is not None:
            raise RuntimeError("Aggregator is finalized")
        if self._lock is not None:
            with self._lock:
                self._skipped[reason] += 1
        else:
            self._skipped[reason] += 1

    def snapshot(self) -> CountTable:
        if self._final is None:
            self._final = CountTable(self._counts, self._skipped)
        return self._final


def merge_tables(tables: Iterable[CountTable]) -> CountTable:
    """Key-wise sum of partial count tables (order does not matter)."""
    counts: Dict[CountKey, int] = {}
    skipped: Counter = Counter()
    for t in tables:
        for k, v in t.items():
            counts[k] = counts.get(k, 0) + v
        skipped.update(t.skipped)
    return CountTable(counts, skipped)
