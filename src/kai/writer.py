from __future__ import annotations

from pathlib import Path
from typing import Dict, List
import gzip
import logging

from .aggregate import CountTable
from .regions import RegionIndex


def _open_gz_out(path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    return gzip.open(path, "wt", encoding="utf-8")


def _prefixed(prefix: str | Path, suffix: str) -> Path:
    p = Path(prefix)
    return p.with_name(f"{p.name}_{suffix}")


def write_bulk(
    table: CountTable,
    index: RegionIndex,
    output_prefix: str | Path,
    logger: logging.Logger | None = None,
) -> List[Path]:
    """Write {prefix}_count.tsv.gz: one row per credited region, sorted by position."""
    if table.single_cell:
        table = table.collapse_barcodes()
    regions = {r.id: r for r in index.regions()}
    rows = []
    for rid, n in table.items():
        r = regions.get(rid)
        if r is None:
            continue
        rows.append((r.chromosome, r.start, r.end, rid, n))
    rows.sort()

    out = _prefixed(output_prefix, "count.tsv.gz")
    with _open_gz_out(out) as fh:
        fh.write("Chr\tStart\tEnd\tRegion\tCount\n")
        for chrom, start, end, rid, n in rows:
            fh.write(f"{chrom}\t{start}\t{end}\t{rid}\t{n}\n")
    if logger:
        logger.info(f"Wrote {len(rows)} regions to {out}")
    return [out]


def write_single_cell(
    table: CountTable,
    output_prefix: str | Path,
    logger: logging.Logger | None = None,
) -> List[Path]:
    """
    Write the 10x-style sparse matrix (matrix.mtx.gz, features.tsv.gz,
    barcodes.tsv.gz) plus a long Feature/Barcode/Count table.
    """
    features = table.regions()
    barcodes = table.barcodes()
    feature_idx: Dict[str, int] = {f: i for i, f in enumerate(features, 1)}
    barcode_idx: Dict[str, int] = {b: j for j, b in enumerate(barcodes, 1)}
    entries = sorted(
        (feature_idx[k[0]], barcode_idx[k[1]], k[0], k[1], n)
        for k, n in table.items()
        if isinstance(k, tuple)
    )

    matrix_path = _prefixed(output_prefix, "matrix.mtx.gz")
    features_path = _prefixed(output_prefix, "features.tsv.gz")
    barcodes_path = _prefixed(output_prefix, "barcodes.tsv.gz")
    long_path = _prefixed(output_prefix, "count_barcodes.tsv.gz")

    with _open_gz_out(barcodes_path) as fh:
        for b in barcodes:
            fh.write(b + "\n")
    with _open_gz_out(features_path) as fh:
        for f in features:
            fh.write(f + "\n")
    with _open_gz_out(matrix_path) as mh, _open_gz_out(long_path) as th:
        mh.write("%%MatrixMarket matrix coordinate integer general\n")
        mh.write("%\n")
        mh.write(f"{len(features)} {len(barcodes)} {len(entries)}\n")
        th.write("Feature\tBarcode\tCount\n")
        for i, j, feature, barcode, n in entries:
            mh.write(f"{i} {j} {n}\n")
            th.write(f"{feature}\t{barcode}\t{n}\n")

    if logger:
        logger.info(
            f"Wrote {len(features)} features x {len(barcodes)} barcodes "
            f"({len(entries)} non-zero entries) to {matrix_path}"
        )
    return [matrix_path, features_path, barcodes_path, long_path]
