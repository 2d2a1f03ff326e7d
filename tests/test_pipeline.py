import pytest

from kai.aggregate import Aggregator
from kai.classify import MIN_INTRON_LENGTH, parse_cigar
from kai.count import FINALIZED, IDLE, STREAMING, Pipeline, run
from kai.kaiClasses import AlignmentRecord, InvalidRegion, Region, RegionKind
from kai.regions import RegionIndex

GENE_A = Region("chr1", 100, 200, "geneA")
JUNC_1 = Region("chr1", 180, 300, "junc1", kind=RegionKind.JUNCTION)


def rec(pos, cigar, chrom="chr1", **kw):
    return AlignmentRecord(chrom, pos, tuple(parse_cigar(cigar)), **kw)


class CountingAggregator(Aggregator):
    def __init__(self):
        super().__init__()
        self.calls = []

    def credit(self, key):
        self.calls.append(key)
        super().credit(key)


def test_contained_read_credits_exactly_once():
    agg = CountingAggregator()
    index = RegionIndex.build([GENE_A, Region("chr1", 300, 400, "geneB"), Region("chr2", 100, 200, "geneC")])
    pipe = Pipeline(index, aggregator=agg)
    table = pipe.consume([rec(150, "10M")])
    assert agg.calls == ["geneA"]
    assert table == {"geneA": 1}


def test_unique_read_counted():
    assert run([rec(150, "10M", loci=1)], [GENE_A]) == {"geneA": 1}


def test_multimapper_not_counted():
    table = run([rec(150, "10M", loci=2)], [GENE_A], max_loci=1)
    assert table == {}
    assert table.skipped["multi_mapped"] == 1


@pytest.mark.parametrize("max_loci", [1, 2, 3, 10])
def test_reads_above_max_loci_never_credited(max_loci):
    agg = CountingAggregator()
    pipe = Pipeline(RegionIndex.build([GENE_A]), max_loci=max_loci, aggregator=agg)
    pipe.consume([rec(150, "10M", loci=max_loci + 1), rec(120, "10M150N10M", loci=max_loci + 5)])
    assert agg.calls == []


def test_junction_read_credits_junction_region():
    table = run([rec(170, "10M120N10M")], [GENE_A, JUNC_1])
    assert table["junc1"] == 1
    # the aligned block 170-180 still lies inside geneA
    assert table["geneA"] == 1


def test_concrete_scenario_stream():
    records = [
        rec(150, "10M", loci=1),             # A
        rec(150, "10M", loci=2),             # B
        rec(170, "10M120N10M", loci=1),      # C
    ]
    table = run(records, [GENE_A, JUNC_1], max_loci=1)
    assert table["junc1"] == 1
    assert table["geneA"] == 2
    assert table.skipped == {"multi_mapped": 1}


def test_junction_only_read_away_from_genes():
    junc = Region("chr1", 5010, 5500, "juncX", kind=RegionKind.JUNCTION)
    table = run([rec(5000, "10M490N10M")], [GENE_A, junc])
    assert table == {"juncX": 1}


def test_short_skip_gives_no_junction_credit():
    short = Region("chr1", 180, 180 + MIN_INTRON_LENGTH - 1, "tiny", kind=RegionKind.JUNCTION)
    table = run([rec(170, f"10M{MIN_INTRON_LENGTH - 1}N10M")], [GENE_A, short])
    assert "tiny" not in table
    assert table == {"geneA": 1}


def test_read_credited_once_per_region_across_blocks():
    # both aligned blocks fall inside geneA
    table = run([rec(110, "10M50N10M")], [GENE_A])
    assert table == {"geneA": 1}


def test_read_on_unknown_chromosome_is_skipped():
    table = run([rec(150, "10M", chrom="chrUn")], [GENE_A])
    assert table == {}
    assert table.skipped["no_region"] == 1


def test_clipped_only_read_is_skipped():
    table = run([rec(150, "40S")], [GENE_A])
    assert table == {}
    assert table.skipped["empty_footprint"] == 1


def test_invalid_region_fails_before_streaming():
    def records():
        raise AssertionError("source should not be touched")
        yield

    with pytest.raises(InvalidRegion):
        run(records(), [Region("chr1", 200, 100, "bad")])


def test_barcode_scenario():
    allow = {"AAAA", "CCCC"}
    table = run([rec(150, "10M", barcode="AAAA")], [GENE_A], mode="single", barcode_allowlist=allow)
    assert table == {("geneA", "AAAA"): 1}

    table = run([rec(150, "10M", barcode="GGGG")], [GENE_A], mode="single", barcode_allowlist=allow)
    assert table == {}
    assert table.skipped["barcode_not_allowed"] == 1


def test_single_cell_read_without_barcode_dropped():
    table = run([rec(150, "10M"), rec(150, "10M", barcode="??")], [GENE_A], mode="single")
    assert table == {}
    assert table.skipped["barcode_unresolved"] == 2


def _mixed_stream():
    out = []
    barcodes = ["AAAA", "CCCC", "GGGG"]
    for i in range(60):
        pos = 80 + (i * 17) % 400
        cigar = "10M120N10M" if i % 7 == 0 else "25M"
        out.append(rec(pos, cigar, loci=1 + (i % 4 == 0), barcode=barcodes[i % 3]))
    return out


REGIONS = [
    GENE_A,
    Region("chr1", 150, 260, "geneB"),
    Region("chr1", 400, 480, "geneC"),
    JUNC_1,
    Region("chr1", 210, 330, "junc2", kind=RegionKind.JUNCTION),
]


def test_single_cell_sums_to_bulk():
    bulk = run(_mixed_stream(), REGIONS, mode="bulk", max_loci=1)
    single = run(_mixed_stream(), REGIONS, mode="single", max_loci=1, barcode_allowlist=set())
    assert single.collapse_barcodes() == bulk
    assert bulk.total() > 0


def test_threaded_run_matches_serial():
    serial = run(_mixed_stream(), REGIONS, mode="single")
    threaded = run(iter(_mixed_stream()), REGIONS, mode="single", threads=3, batch_size=4)
    assert threaded == serial
    assert threaded.skipped == serial.skipped


def test_overlap_policies():
    regions = [GENE_A, Region("chr1", 150, 250, "geneB")]
    # 140-170: 30 bases in geneA, 20 in geneB
    read = rec(140, "30M")
    assert run([read], regions, overlap="all") == {"geneA": 1, "geneB": 1}
    assert run([read], regions, overlap="unique") == {}
    assert run([read], regions, overlap="longest") == {"geneA": 1}
    # 160-180 sits equally in both
    assert run([rec(160, "20M")], regions, overlap="longest") == {}
    # a single overlap is unaffected by the policy
    assert run([rec(110, "10M")], regions, overlap="unique") == {"geneA": 1}


def test_stranded_counting():
    regions = [Region("chr1", 100, 200, "plus", strand="+"), Region("chr1", 100, 200, "minus", strand="-")]
    fwd = rec(150, "10M")
    rev = rec(150, "10M", is_reverse=True)
    assert run([fwd], regions, strandedness="forward") == {"plus": 1}
    assert run([rev], regions, strandedness="forward") == {"minus": 1}
    assert run([fwd], regions, strandedness="reverse") == {"minus": 1}
    assert run([fwd], regions) == {"plus": 1, "minus": 1}


def test_state_machine():
    pipe = Pipeline(RegionIndex.build([GENE_A]))
    assert pipe.state == IDLE
    with pytest.raises(RuntimeError):
        pipe.snapshot()
    pipe.process(rec(150, "10M"))
    assert pipe.state == STREAMING
    table = pipe.finish()
    assert pipe.state == FINALIZED
    assert pipe.snapshot() is table
    with pytest.raises(RuntimeError):
        pipe.process(rec(150, "10M"))
    with pytest.raises(RuntimeError):
        pipe.consume([])


def test_bad_options_rejected():
    index = RegionIndex.build([GENE_A])
    with pytest.raises(ValueError):
        Pipeline(index, mode="spatial")
    with pytest.raises(ValueError):
        Pipeline(index, overlap="best")
    with pytest.raises(ValueError):
        Pipeline(index, max_loci=0)


def test_batch_size_must_be_positive():
    for size in (0, -5):
        with pytest.raises(ValueError, match="batch_size"):
            run([rec(150, "10M")], [GENE_A], threads=2, batch_size=size)
    assert run([rec(150, "10M")], [GENE_A], threads=2, batch_size=1) == {"geneA": 1}


def test_threaded_run_builds_the_filter_once(monkeypatch):
    from kai import count

    built = []

    class CountingFilter(count.AmbiguityFilter):
        def __init__(self, *args, **kwargs):
            built.append(1)
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(count, "AmbiguityFilter", CountingFilter)
    table = run(_mixed_stream(), REGIONS, mode="single", barcode_allowlist={"AAAA", "CCCC"},
                threads=3, batch_size=2)
    assert len(built) == 1
    assert set(table.barcodes()) <= {"AAAA", "CCCC"}
    assert table == run(_mixed_stream(), REGIONS, mode="single", barcode_allowlist={"AAAA", "CCCC"})


def test_xs_tag_strands_junction_matching_when_unstranded():
    regions = [GENE_A, Region("chr1", 180, 300, "junc_plus", strand="+", kind=RegionKind.JUNCTION)]
    assert run([rec(170, "10M120N10M", xs_strand="+")], regions) == {"junc_plus": 1, "geneA": 1}
    assert run([rec(170, "10M120N10M", xs_strand="-")], regions) == {"geneA": 1}
    assert run([rec(170, "10M120N10M")], regions) == {"junc_plus": 1, "geneA": 1}
