from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional, Tuple
import logging

import bamnostic as bn

from .classify import CIGAR_OPS, parse_cigar
from .kaiClasses import AlignmentRecord, SourceExhaustionError


def _get_read_name(aln) -> Optional[str]:
    for attr in ("query_name", "qname", "read_name"):
        v = getattr(aln, attr, None)
        if v:
            return v
    return None


def _get_tag(aln, tag: str):
    try:
        return aln.opt(tag)
    except (KeyError, AttributeError):
        return None


def _get_cigar(aln) -> List[Tuple[str, int]]:
    # bamnostic exposes (op_code, length) tuples; fall back to the CIGAR string
    tuples = getattr(aln, "cigartuples", None) or getattr(aln, "cigar", None)
    if tuples and not isinstance(tuples, str):
        return [(CIGAR_OPS[op] if isinstance(op, int) else op, int(length)) for op, length in tuples]
    cs = getattr(aln, "cigarstring", None) or (tuples if isinstance(tuples, str) else None)
    if cs and cs != "*":
        return parse_cigar(cs)
    return []


def record_from_alignment(
    aln,
    *,
    loci_tag: str = "NH",
    barcode_tag: str = "CB",
    umi_tag: str = "UB",
) -> Optional[AlignmentRecord]:
    """Extract the fields kai needs from a bamnostic alignment; None if unmapped."""
    if getattr(aln, "is_unmapped", False):
        return None
    chr_ = getattr(aln, "reference_name", None)
    if chr_ is None:
        return None

    nh = _get_tag(aln, loci_tag)
    xs = _get_tag(aln, "XS")
    return AlignmentRecord(
        chromosome=chr_,
        # bamnostic uses 'pos' (0-based) instead of 'reference_start'
        position=getattr(aln, "pos", 0) or 0,
        cigar=tuple(_get_cigar(aln)),
        loci=nh if isinstance(nh, int) and nh > 0 else 1,
        barcode=_get_tag(aln, barcode_tag),
        umi=_get_tag(aln, umi_tag),
        is_reverse=bool(getattr(aln, "is_reverse", False)),
        name=_get_read_name(aln),
        xs_strand=xs if xs in ("+", "-") else None,
    )


def bam_references(bam_path: str | Path) -> List[str]:
    try:
        with bn.AlignmentFile(str(bam_path), "rb") as bam:
            return list(getattr(bam, "references", []))
    except Exception as e:
        raise RuntimeError(f"Could not open BAM: {bam_path}: {e}")


def iter_bam_records(
    bam_path: str | Path,
    *,
    loci_tag: str = "NH",
    barcode_tag: str = "CB",
    umi_tag: str = "UB",
    logger: logging.Logger | None = None,
) -> Iterator[AlignmentRecord]:
    """
    Stream mapped alignments from a BAM as AlignmentRecords, in file order.

    Failure to open the file raises RuntimeError; a decoding failure after the
    stream has started raises SourceExhaustionError.
    """
    try:
        bam = bn.AlignmentFile(str(bam_path), "rb")
    except Exception as e:
        raise RuntimeError(f"Could not open BAM: {bam_path}: {e}")

    seen = 0
    unmapped = 0
    try:
        it = iter(bam)
        while True:
            try:
                aln = next(it)
            except StopIteration:
                break
            except Exception as e:
                raise SourceExhaustionError(
                    f"Failed reading {bam_path} after {seen:,} alignments: {e}"
                ) from e
            seen += 1
            rec = record_from_alignment(aln, loci_tag=loci_tag, barcode_tag=barcode_tag, umi_tag=umi_tag)
            if rec is None:
                unmapped += 1
                continue
            yield rec
    finally:
        bam.close()

    if logger:
        logger.info(f"Done {bam_path}: read={seen:,}, unmapped={unmapped:,}")
