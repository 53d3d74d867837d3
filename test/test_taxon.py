"""Tests of the shared taxonomic vocabulary: ranks, names, scans and extern IDs."""

from contextlib import contextmanager

import pytest

from biodv.gbif import GBIFError
from biodv.taxon import (
    Rank,
    Record,
    TaxScan,
    author_year,
    first,
    get_extern_id,
    sort_synonyms,
    split_tag,
    tax_canon,
    tax_list,
    tax_parents,
    update_extern,
)


@contextmanager
def does_not_raise():
    yield


def test_rank_order():
    """Test that ranks are ordered from the most inclusive rank."""

    assert Rank.UNRANKED < Rank.KINGDOM < Rank.CLASS < Rank.GENUS < Rank.SPECIES
    assert str(Rank.GENUS) == "genus"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("genus", Rank.GENUS),
        (" SPECIES ", Rank.SPECIES),
        ("Family", Rank.FAMILY),
        ("subspecies", Rank.UNRANKED),
        ("", Rank.UNRANKED),
        (None, Rank.UNRANKED),
    ],
)
def test_rank_parse(value, expected):
    """Test that unknown ranks are parsed as unranked."""

    assert Rank.parse(value) == expected


@pytest.mark.parametrize(
    "value, expected, raises",
    [
        ("Genus", Rank.GENUS, does_not_raise()),
        ("unranked", Rank.UNRANKED, does_not_raise()),
        ("subspecies", None, pytest.raises(ValueError)),
    ],
)
def test_rank_strict(value, expected, raises):
    """Test that strict parsing rejects unknown ranks."""

    with raises:
        assert Rank.strict(value) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("  homo   SAPIENS ", "Homo sapiens"),
        ("HOMINIDAE", "Hominidae"),
        ("homo sapiens\tsapiens", "Homo sapiens sapiens"),
        ("   ", ""),
        (None, ""),
    ],
)
def test_tax_canon(name, expected):
    """Test the canonical form of taxon names."""

    assert tax_canon(name) == expected


@pytest.mark.parametrize(
    "author, expected",
    [
        ("Linnaeus, 1758", 1758),
        ("(Linnaeus, 1758)", 1758),
        ("Linnaeus", 0),
        ("Noah, 1000", 0),
        ("Time traveller, 3000", 0),
        ("", 0),
        (None, 0),
    ],
)
def test_author_year(author, expected):
    """Test the extraction of the year of description."""

    assert author_year(author) == expected


def test_sort_synonyms():
    """Test that synonyms are sorted by year, with undated names last."""

    taxa = [
        Record({"name": "Cabreragale", "author": "Baryshnikov & Abramov, 1997"}),
        Record({"name": "Kolonocus", "author": "Satunin, 1914"}),
        Record({"name": "Arctogale"}),
        Record({"name": "Cyanomyonax", "author": "Trouessart, 1885"}),
        Record({"name": "Bumbalo", "author": "(Trouessart, 1885)"}),
    ]

    assert [tx.name for tx in sort_synonyms(taxa)] == [
        "Bumbalo",
        "Cyanomyonax",
        "Kolonocus",
        "Cabreragale",
        "Arctogale",
    ]


def test_record():
    """Test a taxon stored as a dictionary."""

    rec = Record(
        {
            "name": "Pithecanthropus",
            "parent": "Homo",
            "rank": "genus",
            "correct": "FALSE",
            "author": "Dubois, 1894",
            "comment": "",
        }
    )

    assert rec.id == "Pithecanthropus"
    assert rec.parent == "Homo"
    assert rec.rank == Rank.GENUS
    assert not rec.correct
    assert rec.keys() == ["author"]
    assert rec.value("Author") == "Dubois, 1894"
    assert rec.value("comment") == ""
    assert repr(rec) == "Pithecanthropus [Pithecanthropus] (genus, synonym)"


def test_scan():
    """Test that a scan produces the taxa in order and ends."""

    taxa = [Record({"name": "Homo"}), Record({"name": "Pan"})]
    scan = TaxScan(taxa)

    assert [tx.name for tx in scan] == ["Homo", "Pan"]
    assert scan.closed
    assert list(scan) == []


def test_scan_close():
    """Test that closing a scan abandons the producer."""

    state = {"produced": 0, "closed": False}

    def producer():
        try:
            for name in ("Homo", "Pan", "Pongo"):
                state["produced"] += 1
                yield Record({"name": name})
        finally:
            state["closed"] = True

    with TaxScan(producer()) as scan:
        assert next(scan).name == "Homo"

    assert scan.closed
    assert state == {"produced": 1, "closed": True}
    assert first(TaxScan(producer())).name == "Homo"


def test_scan_error():
    """Test that a failure of the producer is raised and closes the scan."""

    def producer():
        yield Record({"name": "Homo"})
        raise GBIFError("Connection lost")

    scan = TaxScan(producer())

    with pytest.raises(GBIFError):
        tax_list(scan)

    assert scan.closed


def test_first_empty():
    """Test that the first taxon of an empty scan is None."""

    assert first(TaxScan([])) is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("gbif:5483", ("gbif", "5483")),
        (" gbif : 5483 ", ("gbif", "5483")),
        ("gbif:", ("gbif", "")),
        ("gbif", ("gbif", "")),
    ],
)
def test_split_tag(value, expected):
    """Test splitting service:id tags."""

    assert split_tag(value) == expected


@pytest.mark.parametrize(
    "current, value, expected, raises",
    [
        ("", "gbif:5483", "gbif:5483", does_not_raise()),
        ("ncbi:9604", "gbif:5483", "ncbi:9604 gbif:5483", does_not_raise()),
        ("gbif:1 ncbi:9604", "gbif:5483", "ncbi:9604 gbif:5483", does_not_raise()),
        ("gbif:5483 ncbi:9604", "gbif:", "ncbi:9604", does_not_raise()),
        ("ncbi:9604", "gbif:", "ncbi:9604", does_not_raise()),
        ("", "gbif", None, pytest.raises(ValueError)),
        ("", ":5483", None, pytest.raises(ValueError)),
        ("", "gbif:54 83", None, pytest.raises(ValueError)),
    ],
)
def test_update_extern(current, value, expected, raises):
    """Test adding, replacing and removing extern IDs."""

    with raises:
        assert update_extern(current, value) == expected


def test_update_extern_in_use():
    """Test that an extern ID used by other element is rejected."""

    def in_use(token):
        return token == "gbif:5483"

    with pytest.raises(ValueError):
        update_extern("", "gbif:5483", in_use=in_use)

    # A token already held is not checked
    assert update_extern("gbif:5483", "gbif:5483", in_use=in_use) == "gbif:5483"


def test_get_extern_id():
    """Test reading the ID of a service."""

    rec = Record({"name": "Homo", "extern": "gbif:2436435 gbifx:12"})

    assert get_extern_id(rec, "gbif") == "2436435"
    assert get_extern_id(rec, "gbifx") == "12"
    assert get_extern_id(rec, "ncbi") == ""
    assert get_extern_id(None, "gbif") == ""


def test_tax_parents(fixture_db):
    """Test the lineage of a taxon."""

    assert [tx.name for tx in tax_parents(fixture_db, "Homo sapiens")] == [
        "Hominidae",
        "Homo",
        "Homo sapiens",
    ]
    assert tax_parents(fixture_db, "") == []
    assert tax_parents(fixture_db, "Gorilla") == []
