from __future__ import annotations

from bisect import bisect_left, bisect_right
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import gzip
import logging

from .kaiClasses import InvalidRegion, Region, RegionKind


def _open_text_auto(path: str | Path):
    p = Path(path)
    if p.suffix.lower() == ".gz":
        return gzip.open(p, "rt", encoding="utf-8", errors="replace")
    return open(p, "rt", encoding="utf-8", errors="replace")


def load_bed(
    bed_path: str | Path,
    kind: RegionKind = RegionKind.PLAIN,
    logger: logging.Logger | None = None,
) -> List[Region]:
    """
    Parse a BED3+ file into regions (0-based half-open, like BED itself).

    Column 4 names the region when present and not '.', otherwise the region is
    named 'chrom:start-end'. Column 6 gives the strand. For junction BEDs each
    row is the intron: start is the donor, end the acceptor.
    """
    regions: List[Region] = []
    with _open_text_auto(bed_path) as fh:
        for lineno, line in enumerate(fh, 1):
            if not line.strip() or line.startswith(("#", "track", "browser")):
                continue
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 3:
                if logger:
                    logger.debug(f"Skipping BED line {lineno}: fewer than 3 columns")
                continue
            chrom, start_s, end_s = cols[0], cols[1], cols[2]
            try:
                start = int(start_s); end = int(end_s)
            except ValueError:
                raise InvalidRegion(f"{bed_path}:{lineno}: invalid coordinates {start_s!r}-{end_s!r}")

            name = cols[3] if len(cols) > 3 and cols[3] not in ("", ".") else f"{chrom}:{start}-{end}"
            strand = cols[5] if len(cols) > 5 and cols[5] in ("+", "-") else None
            region = Region(chromosome=chrom, start=start, end=end, id=name, strand=strand, kind=kind)
            try:
                region.validate()
            except InvalidRegion as e:
                raise InvalidRegion(f"{bed_path}:{lineno}: {e}")
            regions.append(region)

    if logger:
        logger.info(f"Parsed {len(regions)} {kind.value} regions from {bed_path}")
    return regions


class _ChromBin:
    """Sorted regions on a single chromosome."""
    __slots__ = ("regions", "starts", "max_len")

    def __init__(self, regions: List[Region]):
        self.regions = sorted(regions, key=lambda r: (r.start, r.end, r.id))
        self.starts = [r.start for r in self.regions]
        self.max_len = max((r.length for r in self.regions), default=0)


class RegionIndex:
    """
    Static overlap index over the regions of interest.

    Plain regions are kept per chromosome as a start-sorted array. An overlap
    query bisects for the candidates that can still reach the query (start
    greater than query start minus the longest region) and scans forward until
    regions start past the query end. Junction regions are matched exactly on
    (chromosome, donor, acceptor).
    """

    def __init__(self):
        self._bins: Dict[str, _ChromBin] = {}
        self._junctions: Dict[Tuple[str, int, int], List[Region]] = {}
        self._n_plain = 0

    @classmethod
    def build(cls, regions: Iterable[Region]) -> "RegionIndex":
        idx = cls()
        seen: Dict[str, Region] = {}
        plain: Dict[str, List[Region]] = {}
        for r in regions:
            r.validate()
            if r.id in seen:
                raise InvalidRegion(
                    f"Duplicate region identifier {r.id!r} "
                    f"({seen[r.id].chromosome}:{seen[r.id].start}-{seen[r.id].end} "
                    f"and {r.chromosome}:{r.start}-{r.end})"
                )
            seen[r.id] = r
            if r.kind == RegionKind.JUNCTION:
                idx._junctions.setdefault((r.chromosome, r.start, r.end), []).append(r)
            else:
                plain.setdefault(r.chromosome, []).append(r)

        for chrom, rs in plain.items():
            idx._bins[chrom] = _ChromBin(rs)
            idx._n_plain += len(rs)
        for key in idx._junctions:
            idx._junctions[key].sort(key=lambda r: r.id)
        return idx

    def __len__(self) -> int:
        return self._n_plain + self.junction_count

    @property
    def junction_count(self) -> int:
        return sum(len(v) for v in self._junctions.values())

    def regions(self) -> List[Region]:
        out: List[Region] = []
        for chrom in sorted(self._bins):
            out.extend(self._bins[chrom].regions)
        for key in sorted(self._junctions):
            out.extend(self._junctions[key])
        return out

    def chromosomes(self) -> List[str]:
        chroms = set(self._bins)
        chroms.update(k[0] for k in self._junctions)
        return sorted(chroms)

    def overlaps(
        self,
        chromosome: str,
        start: int,
        end: int,
        strand: Optional[str] = None,
    ) -> List[Region]:
        """Plain regions overlapping [start, end). Unknown chromosome gives []."""
        b = self._bins.get(chromosome)
        if b is None or start >= end:
            return []
        lo = bisect_right(b.starts, start - b.max_len)
        hi = bisect_left(b.starts, end)
        out: List[Region] = []
        for r in b.regions[lo:hi]:
            if r.end <= start:
                continue
            if strand is not None and r.strand is not None and r.strand != strand:
                continue
            out.append(r)
        return out

    def match_junction(
        self,
        chromosome: str,
        donor: int,
        acceptor: int,
        strand: Optional[str] = None,
    ) -> Optional[Region]:
        candidates = self._junctions.get((chromosome, donor, acceptor))
        if not candidates:
            return None
        if strand is None:
            return candidates[0]
        # Same-strand annotation first, then unstranded ones
        for r in candidates:
            if r.strand == strand:
                return r
        for r in candidates:
            if r.strand is None:
                return r
        return None
