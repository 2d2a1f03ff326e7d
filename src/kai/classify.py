from __future__ import annotations

from typing import List, Optional, Tuple

from .kaiClasses import AlignmentRecord, Footprint, JunctionSpan, Junctions, Span

# Gaps shorter than this are treated as deletions rather than introns
MIN_INTRON_LENGTH = 21

# BAM integer operation codes, in SAM order
CIGAR_OPS = "MIDNSHP=XB"

_ALIGNED = frozenset("M=X")
_REF_ONLY = frozenset("DN")


def parse_cigar(cg: str) -> List[Tuple[str, int]]:
    """Turn a CIGAR string such as '50M100N50M' into [('M', 50), ('N', 100), ('M', 50)]."""
    num = ""
    out: List[Tuple[str, int]] = []
    for ch in cg:
        if ch.isdigit():
            num += ch
        else:
            if not num or ch not in CIGAR_OPS:
                raise ValueError(f"Bad CIGAR: {cg}")
            out.append((ch, int(num)))
            num = ""
    if num:
        raise ValueError(f"Trailing length in CIGAR: {cg}")
    return out


def read_strand(record: AlignmentRecord, strandedness: str = "none") -> Optional[str]:
    """Strand of the originating transcript implied by the library type."""
    if strandedness == "none":
        return None
    if strandedness == "forward":
        return "-" if record.is_reverse else "+"
    if strandedness == "reverse":
        return "+" if record.is_reverse else "-"
    raise ValueError(f"Unknown strandedness '{strandedness}'")


def classify(
    record: AlignmentRecord,
    min_intron: int = MIN_INTRON_LENGTH,
    strandedness: str = "none",
) -> Optional[Footprint]:
    """
    Derive the genomic footprint of one alignment.

    The CIGAR is walked from the leftmost position: M/=/X extend the current
    aligned block, D and N move along the reference only, and I/S/H/P do not
    touch the reference. Each N at least ``min_intron`` long becomes a junction
    from the position just before the skip to the position just after it.

    Returns None when nothing aligns to the reference.
    """
    pos = record.position
    blocks: List[Tuple[int, int]] = []
    junctions: List[JunctionSpan] = []
    has_skip = False
    strand = read_strand(record, strandedness)
    junction_strand = record.xs_strand if record.xs_strand in ("+", "-") else strand

    block_start: Optional[int] = None
    for op, length in record.cigar:
        if op in _ALIGNED:
            if block_start is None:
                block_start = pos
            pos += length
        elif op in _REF_ONLY:
            if block_start is not None:
                blocks.append((block_start, pos))
                block_start = None
            if op == "N":
                has_skip = True
                if length >= min_intron:
                    junctions.append(JunctionSpan(record.chromosome, pos, pos + length, junction_strand))
            pos += length
        # I, S, H, P consume no reference
    if block_start is not None:
        blocks.append((block_start, pos))

    if not blocks:
        return None

    if has_skip:
        return Junctions(record.chromosome, tuple(junctions), tuple(blocks), strand)
    return Span(record.chromosome, blocks[0][0], blocks[-1][1], tuple(blocks), strand)
