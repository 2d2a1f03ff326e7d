import pytest

from kai.classify import MIN_INTRON_LENGTH, classify, parse_cigar, read_strand
from kai.kaiClasses import AlignmentRecord, JunctionSpan, Junctions, Span


def rec(pos, cigar, **kw):
    return AlignmentRecord("chr1", pos, tuple(parse_cigar(cigar)), **kw)


def test_parse_cigar():
    assert parse_cigar("5S20M3I10M") == [("S", 5), ("M", 20), ("I", 3), ("M", 10)]
    for bad in ("10M5", "M10", "10Q"):
        with pytest.raises(ValueError):
            parse_cigar(bad)


def test_plain_span_ignores_insertions_and_clips():
    fp = classify(rec(100, "5S20M3I10M2D15M4S"))
    assert isinstance(fp, Span)
    assert (fp.start, fp.end) == (100, 147)
    assert fp.blocks == ((100, 130), (132, 147))


def test_single_junction():
    fp = classify(rec(170, "10M120N10M"))
    assert isinstance(fp, Junctions)
    assert fp.junctions == (JunctionSpan("chr1", 180, 300, None),)
    assert fp.blocks == ((170, 180), (300, 310))


def test_multiple_junctions():
    fp = classify(rec(1000, "10M100N10M200N10M"))
    assert [(j.donor, j.acceptor) for j in fp.junctions] == [(1010, 1110), (1120, 1320)]


def test_short_skip_is_not_a_junction():
    fp = classify(rec(170, f"10M{MIN_INTRON_LENGTH - 1}N10M"))
    assert isinstance(fp, Junctions)
    assert fp.junctions == ()
    fp = classify(rec(170, f"10M{MIN_INTRON_LENGTH}N10M"))
    assert len(fp.junctions) == 1


def test_min_intron_is_configurable():
    fp = classify(rec(170, "10M50N10M"), min_intron=100)
    assert fp.junctions == ()


def test_nothing_on_reference_is_empty():
    assert classify(rec(100, "30S")) is None
    assert classify(AlignmentRecord("chr1", 100, ())) is None


def test_strandedness():
    fwd = rec(100, "10M")
    rev = rec(100, "10M", is_reverse=True)
    assert read_strand(fwd, "none") is None
    assert read_strand(fwd, "forward") == "+"
    assert read_strand(rev, "forward") == "-"
    assert read_strand(fwd, "reverse") == "-"
    assert read_strand(rev, "reverse") == "+"
    with pytest.raises(ValueError):
        read_strand(fwd, "sideways")
    assert classify(rev, strandedness="forward").strand == "-"


def test_xs_tag_sets_junction_strand():
    fp = classify(rec(170, "10M120N10M", xs_strand="-"))
    assert fp.junctions[0].strand == "-"
    assert fp.strand is None
