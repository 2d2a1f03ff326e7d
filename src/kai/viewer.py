from __future__ import annotations

import glob
import os

from .bamsource import iter_bam_records
from .classify import MIN_INTRON_LENGTH, classify
from .kaiClasses import Junctions, Span


def _expand_bam_patterns(bams: list[str]) -> list[str]:
    """Expand glob patterns (sample*.bam) cross-platform; keep order; de-dupe."""
    seen = set()
    out: list[str] = []
    for pat in bams:
        matches = glob.glob(pat) if any(ch in pat for ch in "*?[]") else ([pat] if os.path.exists(pat) else [])
        if not matches:
            print(f"[WARNING] No BAMs matched: {pat}")
        for m in sorted(matches):
            if m not in seen:
                seen.add(m)
                out.append(m)
    return out


def _describe_footprint(fp) -> str:
    if fp is None:
        return "empty"
    if isinstance(fp, Span):
        return f"span {fp.chromosome}:{fp.start}-{fp.end}"
    if isinstance(fp, Junctions):
        if not fp.junctions:
            return "junctions none (skips below minimum intron length)"
        js = ",".join(f"{j.donor}-{j.acceptor}" for j in fp.junctions)
        return f"junctions {fp.chromosome}:{js}"
    return repr(fp)


def view_bam_head(
    bams: list[str],
    n: int = 10,
    min_intron: int = MIN_INTRON_LENGTH,
    barcode_tag: str = "CB",
) -> int:
    """
    Print the first N mapped reads from each BAM with the footprint kai derives.

    Output is TSV: read_name, locus (0-based, half-open), CIGAR, NH, barcode, footprint.
    """
    bam_paths = _expand_bam_patterns(bams)
    if not bam_paths:
        print("[ERROR] No BAM files found.")
        return 1

    for bam in bam_paths:
        print(f"== {bam} ==")
        printed = 0
        try:
            for rec in iter_bam_records(bam, barcode_tag=barcode_tag):
                cigar = "".join(f"{length}{op}" for op, length in rec.cigar) or "*"
                strand = "-" if rec.is_reverse else "+"
                fp = classify(rec, min_intron)
                print(
                    f"{rec.name or 'NA'}\t{rec.chromosome}:{rec.position}({strand})\t{cigar}\t"
                    f"NH={rec.loci}\tCB={rec.barcode or '-'}\t{_describe_footprint(fp)}"
                )
                printed += 1
                if printed >= n:
                    break
        except Exception as e:
            print(f"[ERROR] Could not read {bam}: {e}")
            return 1

        if printed == 0:
            print("[info] No mapped reads found.")

    return 0
