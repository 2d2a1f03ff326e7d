from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union
import logging
import os
import sys
import traceback

import psutil

from .aggregate import Aggregator, CountTable, merge_tables
from .bamsource import bam_references, iter_bam_records
from .classify import MIN_INTRON_LENGTH, classify
from .filters import BARCODE_UNRESOLVED, AmbiguityFilter, BarcodeRouter, load_barcodes
from .kaiClasses import AlignmentRecord, InvalidRegion, Junctions, KaiError, Region, RegionKind, Span
from .regions import RegionIndex, load_bed
from .writer import write_bulk, write_single_cell

MODES = ("bulk", "single")
OVERLAP_POLICIES = ("all", "unique", "longest")
STRANDEDNESS = ("none", "forward", "reverse")

EMPTY_FOOTPRINT = "empty_footprint"
NO_REGION = "no_region"

IDLE = "idle"
STREAMING = "streaming"
FINALIZED = "finalized"


def _make_logger(level: str) -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("kai")
    # Configure once
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(lvl)
    return logger


def _get_memory_usage():
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024 # Current memory usage in MB


def _overlap_bases(region: Region, blocks) -> int:
    return sum(max(0, min(region.end, e) - max(region.start, s)) for s, e in blocks)


class Pipeline:
    """
    Streaming driver: classify, filter, route and credit one alignment at a time.

    The pipeline moves idle -> streaming -> finalized. It is finalized once the
    source handed to ``consume`` is exhausted (or ``finish`` is called), after
    which only ``snapshot`` is valid.
    """

    def __init__(
        self,
        index: RegionIndex,
        mode: str = "bulk",
        max_loci: int = 1,
        allowlist: Optional[Iterable[str]] = None,
        *,
        min_intron: int = MIN_INTRON_LENGTH,
        overlap: str = "all",
        strandedness: str = "none",
        aggregator: Optional[Aggregator] = None,
        ambiguity_filter: Optional[AmbiguityFilter] = None,
    ):
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}' (expected one of {', '.join(MODES)})")
        if overlap not in OVERLAP_POLICIES:
            raise ValueError(f"Unknown overlap policy '{overlap}'")
        if strandedness not in STRANDEDNESS:
            raise ValueError(f"Unknown strandedness '{strandedness}'")
        self.index = index
        self.mode = mode
        self.single_cell = mode == "single"
        self.min_intron = min_intron
        self.overlap = overlap
        self.strandedness = strandedness
        if ambiguity_filter is None:
            ambiguity_filter = AmbiguityFilter(max_loci, allowlist, single_cell=self.single_cell)
        self.filter = ambiguity_filter
        self.router = BarcodeRouter()
        self.aggregator = aggregator if aggregator is not None else Aggregator()
        self.state = IDLE
        self.processed = 0

    def _plain_hits(self, footprint) -> List[Region]:
        hits: Dict[str, Region] = {}
        for s, e in footprint.blocks:
            for r in self.index.overlaps(footprint.chromosome, s, e, footprint.strand):
                hits.setdefault(r.id, r)
        if len(hits) <= 1 or self.overlap == "all":
            return list(hits.values())
        if self.overlap == "unique":
            return []
        # longest: most aligned bases in common, ties dropped
        scored = sorted(((_overlap_bases(r, footprint.blocks), r) for r in hits.values()),
                        key=lambda x: x[0], reverse=True)
        if scored[0][0] == scored[1][0]:
            return []
        return [scored[0][1]]

    def assign(self, footprint) -> List[Region]:
        """Regions credited for a footprint, each at most once."""
        if isinstance(footprint, Span):
            return self._plain_hits(footprint)
        elif isinstance(footprint, Junctions):
            hits: Dict[str, Region] = {}
            for j in footprint.junctions:
                r = self.index.match_junction(j.chromosome, j.donor, j.acceptor, j.strand)
                if r is not None:
                    hits.setdefault(r.id, r)
            for r in self._plain_hits(footprint):
                hits.setdefault(r.id, r)
            return list(hits.values())
        raise TypeError(f"Unexpected footprint {footprint!r}")

    def process(self, record: AlignmentRecord) -> int:
        """Count one alignment; returns the number of credits issued."""
        if self.state == FINALIZED:
            raise RuntimeError("Pipeline is finalized")
        self.state = STREAMING
        self.processed += 1

        footprint = classify(record, self.min_intron, self.strandedness)
        if footprint is None:
            self.aggregator.skip(EMPTY_FOOTPRINT)
            return 0

        reason = self.filter.reason(record)
        if reason is not None:
            self.aggregator.skip(reason)
            return 0

        barcode = None
        if self.single_cell:
            barcode = self.router.resolve(record)
            if barcode is None:
                self.aggregator.skip(BARCODE_UNRESOLVED)
                return 0

        regions = self.assign(footprint)
        if not regions:
            self.aggregator.skip(NO_REGION)
            return 0
        for r in regions:
            self.aggregator.credit((r.id, barcode) if self.single_cell else r.id)
        return len(regions)

    def finish(self) -> CountTable:
        self.state = FINALIZED
        return self.aggregator.snapshot()

    def consume(
        self,
        records: Iterable[AlignmentRecord],
        logger: logging.Logger | None = None,
        progress_every: int = 1000000,
    ) -> CountTable:
        if self.state != IDLE:
            raise RuntimeError(f"Pipeline already {self.state}; a source can only be consumed once")
        for rec in records:
            self.process(rec)
            if logger and self.processed % progress_every == 0:
                logger.info(f"Processed {self.processed:,} alignments... (Memory: {_get_memory_usage():.1f} MB)")
        return self.finish()

    def snapshot(self) -> CountTable:
        if self.state != FINALIZED:
            raise RuntimeError("Count table is only available once the source is exhausted")
        return self.aggregator.snapshot()


def _batches(records: Iterable[AlignmentRecord], size: int) -> Iterator[List[AlignmentRecord]]:
    it = iter(records)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def _count_batch(
    batch: List[AlignmentRecord],
    index: RegionIndex,
    ambiguity_filter: AmbiguityFilter,
    options: dict,
) -> CountTable:
    pipe = Pipeline(index, ambiguity_filter=ambiguity_filter, **options)
    return pipe.consume(batch)


def run(
    alignments: Iterable[AlignmentRecord],
    regions: Union[RegionIndex, Iterable[Region]],
    mode: str = "bulk",
    max_loci: int = 1,
    barcode_allowlist: Optional[Iterable[str]] = None,
    *,
    min_intron: int = MIN_INTRON_LENGTH,
    overlap: str = "all",
    strandedness: str = "none",
    threads: int = 1,
    batch_size: int = 100000,
    logger: logging.Logger | None = None,
) -> CountTable:
    """
    Count alignments against regions in a single pass and return the CountTable.

    With ``threads > 1`` the stream is cut into batches; each worker counts a
    batch into its own table and the partial tables are summed at the end. At
    most ``2 * threads`` batches are held in memory at once.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    index = regions if isinstance(regions, RegionIndex) else RegionIndex.build(regions)
    options = dict(
        mode=mode,
        max_loci=max_loci,
        allowlist=set(barcode_allowlist or ()),
        min_intron=min_intron,
        overlap=overlap,
        strandedness=strandedness,
    )

    if threads <= 1:
        return Pipeline(index, **options).consume(alignments, logger=logger)

    # Validate options up front so errors surface before any work is queued;
    # the allow-list is canonicalised once and shared read-only by all workers
    ambiguity_filter = Pipeline(index, **options).filter
    options.pop("max_loci")
    options.pop("allowlist")
    partials: List[CountTable] = []
    n_batches = 0
    with ThreadPoolExecutor(max_workers=threads) as executor:
        pending = []
        for batch in _batches(alignments, batch_size):
            pending.append(executor.submit(_count_batch, batch, index, ambiguity_filter, options))
            n_batches += 1
            if len(pending) >= 2 * threads:
                partials.append(pending.pop(0).result())
            if logger and n_batches % 10 == 0:
                logger.info(f"Queued {n_batches * batch_size:,} alignments in {n_batches} batches... "
                            f"(Memory: {_get_memory_usage():.1f} MB)")
        partials.extend(f.result() for f in pending)
    if logger:
        logger.debug(f"Merging {len(partials)} partial count tables")
    return merge_tables(partials)


def count_regions(
    mode: str,
    bam_path: str | Path,
    regions_path: str | Path,
    output_prefix: str | Path,
    *,
    max_loci: int = 1,
    cell_barcode_path: str | Path | None = None,
    junctions_path: str | Path | None = None,
    min_intron: int = MIN_INTRON_LENGTH,
    overlap: str = "all",
    strandedness: str = "none",
    loci_tag: str = "NH",
    barcode_tag: str = "CB",
    umi_tag: str = "UB",
    threads: int = 1,
    batch_size: int = 100000,
    log_level: str = "INFO",
) -> int:
    """
    End-to-end count: load regions (and barcodes), stream the BAM, write tables.
    Returns a process exit code.
    """
    logger = _make_logger(log_level)
    logger.info("Running kai")
    logger.info(f"Mode: {mode}")
    logger.info(f"BAM file: {bam_path}")
    logger.info(f"Regions file: {regions_path}")
    logger.info(f"Output prefix: {output_prefix}")
    logger.info(f"Maximum loci (NH): {max_loci}")
    logger.debug(f"Python version: {sys.version}")
    logger.debug(f"Starting memory: {_get_memory_usage():.1f} MB")

    allowlist = set()
    if mode == "single":
        try:
            allowlist = load_barcodes(cell_barcode_path, logger=logger)
        except OSError as e:
            logger.error(f"Could not read cell barcode file: {e}")
            return 2
        logger.info(
            "Cell barcodes of interest: "
            + (f"{len(allowlist)} barcodes" if allowlist else "None (processing all reads)")
        )
    elif cell_barcode_path is not None:
        logger.warning("Cell barcode list is ignored in bulk mode")

    try:
        logger.info("Parsing regions of interest from BED file")
        regions = load_bed(regions_path, logger=logger)
        if junctions_path is not None:
            regions += load_bed(junctions_path, kind=RegionKind.JUNCTION, logger=logger)
        index = RegionIndex.build(regions)
    except InvalidRegion as e:
        logger.error(f"Invalid region set: {e}")
        return 2
    except OSError as e:
        logger.error(f"Could not read region file: {e}")
        return 2
    logger.info(f"Indexed {len(index)} regions ({index.junction_count} junctions) "
                f"on {len(index.chromosomes())} chromosomes")

    if logger.isEnabledFor(logging.DEBUG):
        try:
            bam_contigs = set(bam_references(bam_path))
            region_contigs = set(index.chromosomes())
            logger.debug(f"Contigs in regions not in BAM (first 20): {sorted(region_contigs - bam_contigs)[:20]}")
            logger.debug(f"Contigs in BAM not in regions (first 20): {sorted(bam_contigs - region_contigs)[:20]}")
        except RuntimeError as e:
            logger.debug(f"Could not read BAM header: {e}")

    logger.info("Counting reads mapped to regions of interest")
    try:
        records = iter_bam_records(
            bam_path, loci_tag=loci_tag, barcode_tag=barcode_tag, umi_tag=umi_tag, logger=logger
        )
        table = run(
            records,
            index,
            mode=mode,
            max_loci=max_loci,
            barcode_allowlist=allowlist,
            min_intron=min_intron,
            overlap=overlap,
            strandedness=strandedness,
            threads=threads,
            batch_size=batch_size,
            logger=logger,
        )
    except (KaiError, RuntimeError, ValueError) as e:
        logger.error(f"{bam_path}: {e}")
        logger.debug("Traceback:\n" + traceback.format_exc())
        return 1

    logger.info(f"Credited {table.total():,} assignments to {len(table.regions())} regions")
    logger.debug(
        "Reasons for uncounted alignments: "
        + (", ".join(f"{k}={v}" for k, v in sorted(table.skipped.items())) or "none")
    )
    if not table:
        logger.warning(
            "No alignments were assigned to any region. Common causes: contig name "
            "mismatch (chr1 vs 1), too strict --max-loci, or a barcode list that matches nothing."
        )

    logger.info("Writing output files")
    try:
        if mode == "single":
            paths = write_single_cell(table, output_prefix, logger=logger)
        else:
            paths = write_bulk(table, index, output_prefix, logger=logger)
    except OSError as e:
        logger.error(f"Could not write output files: {e}")
        return 1
    for p in paths:
        logger.debug(f"Wrote {p}")

    logger.info(f"Finished processing (Memory: {_get_memory_usage():.1f} MB)")
    return 0
