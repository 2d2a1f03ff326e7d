from __future__ import annotations

import argparse

from .classify import MIN_INTRON_LENGTH
from .count import count_regions
from .viewer import view_bam_head


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Peek at the first reads of BAM files and their footprints
    if args.cmd == "view":
        return view_bam_head(args.bams, n=args.num, min_intron=args.min_intron, barcode_tag=args.barcode_tag)

    # Count reads per region (bulk) or per region and cell (single)
    elif args.cmd == "count":
        if args.max_loci < 1:
            parser.error("--max-loci must be at least 1")
        if args.threads < 1:
            parser.error("--threads must be at least 1")
        if args.batch_size < 1:
            parser.error("--batch-size must be at least 1")
        log_level = "DEBUG" if args.verbose else args.log_level
        return count_regions(
            args.mode,
            args.bam_file,
            args.regions_file,
            args.output_prefix,
            max_loci=args.max_loci,
            cell_barcode_path=args.cell_barcodes,
            junctions_path=args.junctions,
            min_intron=args.min_intron,
            overlap=args.overlap,
            strandedness=args.strandedness,
            loci_tag=args.loci_tag,
            barcode_tag=args.barcode_tag,
            umi_tag=args.umi_tag,
            threads=args.threads,
            batch_size=args.batch_size,
            log_level=log_level,
        )
    else:
        parser.error("Unknown command")

    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="kai",
        description="Count reads mapped to regions of interest from bulk/single-cell RNA-seq data."
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # Sanity checking of BAM files
    t = sub.add_parser(
        "view",
        help="Print first N reads from each BAM file with their derived footprint."
    )
    t.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files (glob patterns allowed)."
    )
    t.add_argument(
        "-n", "--num",
        type=int,
        default=10,
        help="Number of reads per BAM."
    )
    t.add_argument(
        "--min-intron",
        type=int,
        default=MIN_INTRON_LENGTH,
        help=f"Shortest reference skip treated as a junction (default {MIN_INTRON_LENGTH})."
    )
    t.add_argument(
        "--barcode-tag",
        default="CB",
        help="BAM tag holding the cell barcode (default: CB)."
    )

    # count
    c = sub.add_parser(
        "count",
        help="Count reads over BED regions; bulk writes a count table, single writes a sparse matrix."
    )
    c.add_argument(
        "mode",
        choices=["bulk", "single"],
        help="Mode of operation: 'bulk' or 'single'."
    )
    c.add_argument(
        "bam_file",
        help="Path to the BAM file."
    )
    c.add_argument(
        "regions_file",
        help="Path to the BED file containing regions of interest (.gz accepted)."
    )
    c.add_argument(
        "output_prefix",
        help="Output prefix for the output files."
    )
    c.add_argument(
        "-l", "--max-loci",
        type=int,
        default=1,
        help="Maximum number of loci the read maps to (NH tag; default 1)."
    )
    c.add_argument(
        "-c", "--cell-barcodes",
        default=None,
        help="Optional file specifying cell barcodes of interest (single mode)."
    )
    c.add_argument(
        "-j", "--junctions",
        default=None,
        help="Optional BED of annotated introns; reads whose splice gap matches one exactly are counted to it."
    )
    c.add_argument(
        "--min-intron",
        type=int,
        default=MIN_INTRON_LENGTH,
        help=f"Shortest reference skip treated as a junction (default {MIN_INTRON_LENGTH})."
    )
    c.add_argument(
        "--overlap",
        choices=["all", "unique", "longest"],
        default="all",
        help="Reads overlapping several regions: 'all' counts each region (default), 'unique' drops the read, "
             "'longest' keeps the region sharing most aligned bases (ties dropped)."
    )
    c.add_argument(
        "--strandedness",
        choices=["none", "forward", "reverse"],
        default="none",
        help="Library strandedness; stranded regions then only count reads from their own strand. "
             "Junction matching uses the XS tag strand whenever the read carries one, even with 'none'."
    )
    c.add_argument(
        "--loci-tag",
        default="NH",
        help="BAM tag with the number of reported alignments (default: NH)."
    )
    c.add_argument(
        "--barcode-tag",
        default="CB",
        help="BAM tag holding the cell barcode (default: CB)."
    )
    c.add_argument(
        "--umi-tag",
        default="UB",
        help="BAM tag holding the UMI (default: UB). UMIs are carried but not collapsed."
    )
    c.add_argument(
        "-t", "--threads",
        type=int,
        default=1,
        help="Worker threads counting batches of alignments (default 1)."
    )
    c.add_argument(
        "--batch-size",
        type=int,
        default=100000,
        help="Alignments per worker batch when --threads > 1 (default 100000)."
    )
    # Debugging assistance
    c.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) output."
    )
    c.add_argument(
        "--log-level",
        default="INFO",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO)."
    )
    return p

if __name__ == "__main__":
    raise SystemExit(main())
