from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Set
import gzip
import logging
import re

from .kaiClasses import AlignmentRecord

_BARCODE_RE = re.compile(r"^[ACGTN]+(-\d+)?$")

# Skip reasons reported by the filter and router
MULTI_MAPPED = "multi_mapped"
BARCODE_NOT_ALLOWED = "barcode_not_allowed"
BARCODE_UNRESOLVED = "barcode_unresolved"


def canonical_barcode(raw: Optional[str]) -> Optional[str]:
    """Upper-cased, stripped barcode, or None if absent or malformed."""
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="replace")
    bc = str(raw).strip().upper()
    if not bc or not _BARCODE_RE.match(bc):
        return None
    return bc


def load_barcodes(path: str | Path | None, logger: logging.Logger | None = None) -> Set[str]:
    """Read a cell barcode allow-list, one barcode per line (.gz accepted)."""
    barcodes: Set[str] = set()
    if path is None:
        return barcodes
    p = Path(path)
    opener = gzip.open if p.suffix.lower() == ".gz" else open
    malformed = 0
    with opener(p, "rt", encoding="utf-8") as fh:
        for line in fh:
            raw = line.strip()
            if not raw or raw.startswith("#"):
                continue
            bc = canonical_barcode(raw.split("\t")[0])
            if bc is None:
                malformed += 1
                continue
            barcodes.add(bc)
    if logger:
        logger.info(f"Loaded {len(barcodes)} cell barcodes from {p}")
        if malformed:
            logger.warning(f"Ignored {malformed} malformed barcode line(s) in {p}")
    return barcodes


class AmbiguityFilter:
    """
    Decide whether an alignment may be counted at all.

    Reads aligning to more than ``max_loci`` places are rejected. In single-cell
    mode with a non-empty allow-list, reads whose barcode is missing or not on
    the list are rejected too; an empty allow-list lets every barcode through.
    """

    def __init__(
        self,
        max_loci: int = 1,
        allowlist: Optional[Iterable[str]] = None,
        single_cell: bool = False,
    ):
        if max_loci < 1:
            raise ValueError(f"max_loci must be >= 1, got {max_loci}")
        self.max_loci = max_loci
        self.single_cell = single_cell
        self.allowlist: Set[str] = set()
        for bc in allowlist or ():
            c = canonical_barcode(bc)
            if c is not None:
                self.allowlist.add(c)

    def reason(self, record: AlignmentRecord) -> Optional[str]:
        if record.loci > self.max_loci:
            return MULTI_MAPPED
        if self.single_cell and self.allowlist:
            bc = canonical_barcode(record.barcode)
            if bc is None or bc not in self.allowlist:
                return BARCODE_NOT_ALLOWED
        return None

    def accept(self, record: AlignmentRecord) -> bool:
        return self.reason(record) is None


class BarcodeRouter:
    """Map the raw cell barcode tag of a read to its canonical identifier."""

    def resolve(self, record: AlignmentRecord) -> Optional[str]:
        return canonical_barcode(record.barcode)
