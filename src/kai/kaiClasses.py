from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union


class KaiError(Exception):
    """Base class for fatal errors raised by kai."""


class InvalidRegion(KaiError, ValueError):
    """A region (or the region set as a whole) cannot be indexed."""


class SourceExhaustionError(KaiError):
    """The alignment source failed part way through the stream."""


class RegionKind(str, Enum):
    PLAIN = "plain"
    JUNCTION = "junction"


# Region of interest, 0-based half-open like BED
@dataclass(frozen=True)
class Region:
    chromosome: str
    start: int
    end: int
    id: str
    strand: Optional[str] = None
    kind: RegionKind = RegionKind.PLAIN

    def validate(self) -> None:
        if not self.chromosome or any(ch.isspace() for ch in self.chromosome):
            raise InvalidRegion(f"Malformed chromosome name {self.chromosome!r} for region {self.id}")
        if self.start < 0:
            raise InvalidRegion(f"Negative start for region {self.id}: {self.start}")
        if self.start >= self.end:
            raise InvalidRegion(
                f"Region {self.id} has start >= end ({self.chromosome}:{self.start}-{self.end})"
            )
        if self.strand not in (None, "+", "-"):
            raise InvalidRegion(f"Unknown strand {self.strand!r} for region {self.id}")

    @property
    def length(self) -> int:
        return self.end - self.start


# Minimal alignment data needed for counting, decoupled from the BAM library
@dataclass
class AlignmentRecord:
    """One parsed alignment.

    ``position`` is the 0-based leftmost reference position and ``cigar`` a
    tuple of ``(op, length)`` pairs using the single-letter SAM operations.
    ``loci`` is the number of places the read aligns (NH tag, 1 if absent).
    """
    chromosome: str
    position: int
    cigar: Tuple[Tuple[str, int], ...]
    loci: int = 1
    barcode: Optional[str] = None
    umi: Optional[str] = None
    is_reverse: bool = False
    name: Optional[str] = None
    xs_strand: Optional[str] = None


@dataclass(frozen=True)
class JunctionSpan:
    chromosome: str
    donor: int     # first intronic base (0-based)
    acceptor: int  # first exonic base after the skip (0-based)
    strand: Optional[str] = None


# Footprints: an alignment is either a plain span or a set of junctions
@dataclass(frozen=True)
class Span:
    chromosome: str
    start: int
    end: int
    blocks: Tuple[Tuple[int, int], ...]
    strand: Optional[str] = None


@dataclass(frozen=True)
class Junctions:
    chromosome: str
    junctions: Tuple[JunctionSpan, ...]
    blocks: Tuple[Tuple[int, int], ...]
    strand: Optional[str] = None


Footprint = Union[Span, Junctions]
CountKey = Union[str, Tuple[str, str]]
