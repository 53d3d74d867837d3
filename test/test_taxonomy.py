"""Tests of the local taxonomy."""

from io import StringIO
from logging import CRITICAL, DEBUG

import pytest

from biodv.stanza import read_records
from biodv.taxon import EXTERN, Rank, tax_list
from biodv.taxonomy import DB, TaxonomyError, add_names, collapse_unranked

from .conftest import FIXTURE_FILES, log_check

TEST_DATA = [
    ("Hominidae", "", True, Rank.FAMILY),
    ("Pongo", "Hominidae", True, Rank.GENUS),
    ("Pan", "Hominidae", True, Rank.GENUS),
    ("Pan troglodytes", "Pan", True, Rank.SPECIES),
    ("Pan paniscus", "Pan", True, Rank.SPECIES),
    ("Homo", "Hominidae", True, Rank.GENUS),
    ("Homo sapiens", "Homo", True, Rank.SPECIES),
    ("Pithecanthropus", "Homo", False, Rank.GENUS),
]

ORDER_BLOB = """
name:	Mustela
rank:	genus
author:	Linnaeus, 1758
%%
name:	Cabreragale
rank:	genus
parent:	Mustela
correct: false
author: Baryshnikov & Abramov, 1997
%%
name:	Cyanomyonax
rank:	genus
parent:	Mustela
correct: false
author: Trouessart, 1885
%%
name:	Kolonocus
rank:	genus
parent:	Mustela
correct: false
author:	Satunin, 1914
%%
name:	Mustela nigripes
rank:	species
parent: Mustela
author: (Audubon & Bachman, 1851)
%%
name:	Mustela frenata
rank:	species
parent: Mustela
author: Lichtenstein, 1831
%%
name:	Mustela nivalis
rank:	species
parent: Mustela
author: Linnaeus, 1766
%%
name:	Mustela nivalis corsicana
rank:	unranked
parent:	Mustela nivalis
correct: false
%%
name:	Mustela rixosa
rank:	species
parent:	Mustela nivalis
correct: false
author: (Bangs, 1896)
%%
name:	Mustela vulgaris
rank:	species
parent:	Mustela nivalis
correct: false
author: Erxleben, 1777
%%
"""


def names(taxa):
    return [tx.name for tx in taxa]


def test_add():
    """Test adding taxa, and the rejected additions."""

    db = DB()

    with pytest.raises(TaxonomyError):
        db.add(" ", "Primates", Rank.CLASS, True)

    with pytest.raises(TaxonomyError):
        db.add("Tarsidae", "Primates", Rank.FAMILY, True)

    for name, parent, correct, rank in TEST_DATA:
        tax = db.add(name, parent, rank, correct)
        assert tax.name == name
        assert tax.parent == parent
        assert tax.rank == rank
        assert tax.correct == correct

    # A synonym can not be a parent
    with pytest.raises(TaxonomyError):
        db.add("Pithecanthropus erectus", "Pithecanthropus", Rank.SPECIES, False)

    # A correct taxon must have a rank below its parent
    with pytest.raises(TaxonomyError):
        db.add("Gorilla", "Pan", Rank.GENUS, True)

    for name, parent, correct, rank in TEST_DATA:
        with pytest.raises(TaxonomyError):
            db.add(name, parent, rank, correct)

    # A synonym must have a parent
    with pytest.raises(TaxonomyError):
        db.add("Rhedosaurus", "", Rank.GENUS, False)

    assert len(db) == len(TEST_DATA)
    assert names(tax_list(db.children(""))) == ["Hominidae"]
    assert names(tax_list(db.children("Hominidae"))) == ["Homo", "Pan", "Pongo"]
    assert names(tax_list(db.synonyms("Homo"))) == ["Pithecanthropus"]

    found = tax_list(db.taxon_by_name("pan  PANISCUS"))
    assert len(found) == 1
    assert found[0].correct
    assert found[0].parent == "Pan"

    assert db.changed


@pytest.mark.parametrize(
    "name, parent, rank, correct",
    [
        pytest.param("Homo erectus", "Homo", Rank.GENUS, True, id="same rank"),
        pytest.param("Hominoidea", "Homo", Rank.FAMILY, True, id="higher rank"),
        pytest.param("Pithecanthropus erectus", "", Rank.SPECIES, False, id="root"),
    ],
)
def test_add_rejected(name, parent, rank, correct):
    """Test that invalid additions are rejected and leave the taxonomy unchanged."""

    db = DB()
    db.add("Homo", "", Rank.GENUS, True)
    db.add("Homo sapiens", "Homo", Rank.SPECIES, True)

    with pytest.raises(TaxonomyError):
        db.add(name, parent, rank, correct)

    assert len(db) == 2
    assert name not in db


def test_add_unranked():
    """Test that unranked taxa do not constrain the ranks of their descendants."""

    db = DB()
    db.add("Primates", "", Rank.ORDER, True)
    db.add("Haplorhini", "Primates", Rank.UNRANKED, True)
    db.add("Hominidae", "Haplorhini", Rank.FAMILY, True)

    with pytest.raises(TaxonomyError):
        db.add("Mammalia", "Haplorhini", Rank.CLASS, True)

    assert db.effective_rank("Haplorhini") == Rank.ORDER
    assert db.effective_rank("Hominidae") == Rank.FAMILY


def test_load(fixture_db):
    """Test loading the fixture taxonomy."""

    assert not fixture_db.changed
    assert len(fixture_db) == 8

    tax = fixture_db.tax_ed("gbif:51")
    assert tax.name == "Homo sapiens"
    assert tax.value("author") == "Linnaeus, 1758"

    assert fixture_db.tax_ed("homo SAPIENS") == tax
    assert fixture_db.tax_ed("gbif:1") is None
    assert fixture_db.tax_ed("") is None


def test_load_bad_file(caplog):
    """Test that a child before its parent is reported as a bad file."""

    db = DB()
    with pytest.raises(TaxonomyError):
        with open(FIXTURE_FILES.rf.bad_taxonomy_file, encoding="utf-8") as stream:
            db.load(stream)

    log_check(caplog, ((CRITICAL, "Bad taxonomy file: Homo sapiens: parent"),))


def test_round_trip(fixture_db):
    """Test that writing the taxonomy gives back the records that were read."""

    out = StringIO()
    fixture_db.write(out)

    with open(FIXTURE_FILES.rf.taxonomy_file, encoding="utf-8") as stream:
        original = stream.read()

    assert out.getvalue() == original

    db = DB()
    db.load(StringIO(out.getvalue()))
    for rec in read_records(StringIO(original)):
        tax = db.taxon_by_id(rec["name"])
        assert tax.parent == rec.get("parent", "")
        assert str(tax.rank) == rec["rank"]
        assert tax.correct == (rec["correct"] == "true")
        assert {key: tax.value(key) for key in tax.keys()} == {
            key: rec[key] for key in ("author", "extern") if key in rec
        }


def test_commit(tmp_path, caplog):
    """Test writing a taxonomy to a project directory and opening it again."""

    caplog.set_level(DEBUG)

    db = DB.open(tmp_path)
    assert len(db) == 0

    db.add("Homo", "", Rank.GENUS, True)
    db.add("Homo sapiens", "Homo", Rank.SPECIES, True)
    db.set_value("Homo sapiens", EXTERN, "gbif:2436436")
    db.commit()

    assert not db.changed
    assert (tmp_path / "taxonomy" / "taxonomy.stz").exists()
    assert not (tmp_path / "taxonomy" / "taxonomy.tmp").exists()

    db = DB.open(tmp_path)
    assert names(db.tax_list("Homo")) == ["Homo sapiens"]
    assert db.tax_ed("gbif:2436436").name == "Homo sapiens"
    assert not db.changed

    # Committing an unchanged taxonomy does nothing
    db.commit()

    log_check(
        caplog,
        (
            (DEBUG, "Taxonomy written to"),
            (DEBUG, "Reading taxonomy from"),
        ),
    )


def test_commit_without_path():
    """Test that a taxonomy kept in memory can not be committed."""

    db = DB()
    db.add("Homo", "", Rank.GENUS, True)

    with pytest.raises(TaxonomyError):
        db.commit()


def test_taxon_by_id_empty(fixture_db):
    """Test that an empty ID is rejected."""

    with pytest.raises(ValueError):
        fixture_db.taxon_by_id("  ")

    assert fixture_db.taxon_by_id("Gorilla") is None


def test_move(fixture_db):
    """Test moving taxa as synonyms and as correct names."""

    pan = fixture_db.tax_ed("Pan")
    pan.move("Homo", False)

    assert not pan.correct
    assert pan.parent == "Homo"

    # The descendants of the new synonym are moved to the new parent
    assert names(tax_list(fixture_db.children("Homo"))) == [
        "Homo sapiens",
        "Pan paniscus",
        "Pan troglodytes",
    ]
    assert fixture_db.tax_list("Pan") == []

    pith = fixture_db.tax_ed("Pithecanthropus")
    pith.move("Hominidae", True)

    assert pith.correct
    assert pith.parent == "Hominidae"
    assert names(tax_list(fixture_db.synonyms("Homo"))) == ["Pan"]


def test_move_moves_descendants(fixture_db):
    """Test that the descendants of a correct taxon are moved to the new parent."""

    fixture_db.add("Hylobatidae", "", Rank.FAMILY)
    fixture_db.add("Pan paniscus paniscus", "Pan paniscus")

    pan = fixture_db.tax_ed("Pan")
    pan.move("Hylobatidae", True)

    assert pan.parent == "Hylobatidae"
    assert fixture_db.tax_list("Pan") == []
    assert names(tax_list(fixture_db.children("Hylobatidae"))) == [
        "Pan",
        "Pan paniscus",
        "Pan troglodytes",
    ]
    assert names(tax_list(fixture_db.children("Hominidae"))) == ["Homo", "Pongo"]

    # The moved descendants keep their own descendants
    assert fixture_db.tax_ed("Pan paniscus paniscus").parent == "Pan paniscus"


def test_move_to_current_parent(fixture_db):
    """Test that a move to the current parent with the current status is ignored."""

    fixture_db.changed = False
    fixture_db.move("Pan", "Hominidae", True)

    assert not fixture_db.changed
    assert names(fixture_db.tax_list("Pan")) == ["Pan paniscus", "Pan troglodytes"]


def test_graft(fixture_db):
    """Test attaching a root taxon to a parent with its descendants."""

    fixture_db.add("Gorilla", "", Rank.GENUS)
    fixture_db.add("Gorilla gorilla", "Gorilla", Rank.SPECIES)

    fixture_db.graft("Gorilla", "Hominidae")

    assert fixture_db.tax_ed("Gorilla").parent == "Hominidae"
    assert names(fixture_db.tax_list("Gorilla")) == ["Gorilla gorilla"]
    assert names(tax_list(fixture_db.children(""))) == ["Hominidae"]


@pytest.mark.parametrize(
    "name, parent",
    [
        pytest.param("Homo", "Pan", id="not at root"),
        pytest.param("Gorilla", "Pithecanthropus", id="synonym parent"),
        pytest.param("Gorilla", "Pan paniscus", id="below lower rank"),
    ],
)
def test_graft_rejected(fixture_db, name, parent):
    """Test that a taxon can only be grafted from the root to a valid parent."""

    fixture_db.add("Gorilla", "", Rank.GENUS)

    with pytest.raises(TaxonomyError):
        fixture_db.graft(name, parent)

    assert fixture_db.tax_ed("Gorilla").parent == ""
    assert fixture_db.tax_ed("Homo").parent == "Hominidae"


@pytest.mark.parametrize(
    "name, parent, correct",
    [
        pytest.param("Hominidae", "Homo", True, id="into descendant"),
        pytest.param("Pan", "Homo sapiens", True, id="below lower rank"),
        pytest.param("Pithecanthropus", "Homo", True, id="same rank correct"),
        pytest.param("Homo sapiens", "Pithecanthropus", False, id="synonym parent"),
        pytest.param("Homo", "", False, id="synonym at root"),
        pytest.param("Homo", "", True, id="synonym descendant at root"),
        pytest.param("Homo", "Gorilla", True, id="missing parent"),
        pytest.param("Gorilla", "Homo", True, id="missing taxon"),
    ],
)
def test_move_rejected(fixture_db, name, parent, correct):
    """Test that rejected moves leave the taxonomy unchanged."""

    before = StringIO()
    fixture_db.write(before)

    with pytest.raises(TaxonomyError):
        fixture_db.move(name, parent, correct)

    after = StringIO()
    fixture_db.write(after)

    assert before.getvalue() == after.getvalue()
    assert not fixture_db.changed


def test_set_rank(fixture_db):
    """Test changing the rank of taxa."""

    hominidae = fixture_db.tax_ed("Hominidae")
    hominidae.set_rank(Rank.CLASS)
    assert hominidae.rank == Rank.CLASS

    pan = fixture_db.tax_ed("Pan")
    with pytest.raises(TaxonomyError):
        pan.set_rank(Rank.SPECIES)
    assert pan.rank == Rank.GENUS

    # An unranked taxon is always valid
    pan.set_rank(Rank.UNRANKED)
    assert pan.rank == Rank.UNRANKED
    assert fixture_db.effective_rank("Pan") == Rank.CLASS


def test_set_value(fixture_db):
    """Test setting the values of a taxon."""

    homo = fixture_db.tax_ed("Homo")

    # An empty extern value does nothing
    homo.set(EXTERN, "    ")
    assert not fixture_db.changed

    homo.set("Type Species", "Homo sapiens")
    assert homo.value("type-species") == "Homo sapiens"
    assert homo.keys() == ["author", "extern", "type-species"]

    homo.set("type species", "")
    assert homo.keys() == ["author", "extern"]

    for key in ("name", "parent", "rank", "correct", "  "):
        with pytest.raises(TaxonomyError):
            homo.set(key, "Pan")


def test_set_extern(fixture_db):
    """Test setting and removing extern IDs."""

    pongo = fixture_db.tax_ed("Pongo")

    # gbif:50 is already used by Homo
    with pytest.raises(TaxonomyError):
        pongo.set(EXTERN, "gbif:50")

    pongo.set(EXTERN, "gbif:63")
    pongo.set(EXTERN, "ncbi:9599")
    assert pongo.value(EXTERN) == "gbif:63 ncbi:9599"
    assert fixture_db.tax_ed("ncbi:9599") == pongo

    pongo.set(EXTERN, "gbif:")
    assert pongo.value(EXTERN) == "ncbi:9599"
    assert fixture_db.tax_ed("gbif:63") is None


def test_delete(fixture_db):
    """Test removing taxa, with and without their descendants."""

    fixture_db.tax_ed("Homo").delete()

    assert "Homo" not in fixture_db
    assert fixture_db.tax_ed("gbif:50") is None
    assert fixture_db.tax_ed("Homo sapiens").parent == "Hominidae"
    assert fixture_db.tax_ed("Pithecanthropus").parent == "Hominidae"

    fixture_db.tax_ed("Pan").delete(recurse=True)

    assert "Pan paniscus" not in fixture_db
    assert fixture_db.tax_ed("gbif:61") is None
    assert names(fixture_db.tax_list("Hominidae")) == [
        "Homo sapiens",
        "Pongo",
        "Pithecanthropus",
    ]


def test_delete_root():
    """Test that the synonyms of a deleted root taxon are removed."""

    db = DB()
    db.add("Hominidae", "", Rank.FAMILY, True)
    db.add("Pongidae", "Hominidae", Rank.FAMILY, False)
    db.add("Homo", "Hominidae", Rank.GENUS, True)
    db.add("Pan", "Hominidae", Rank.GENUS, True)

    db.delete("Hominidae")

    assert names(db.tax_list("")) == ["Homo", "Pan"]
    assert "Pongidae" not in db
    assert len(db) == 2


def test_children_order():
    """Test that correct children are sorted by name and synonyms by year."""

    db = DB()
    db.load(StringIO(ORDER_BLOB))

    assert names(db.tax_list("Mustela")) == [
        "Mustela frenata",
        "Mustela nigripes",
        "Mustela nivalis",
        "Cyanomyonax",
        "Kolonocus",
        "Cabreragale",
    ]

    assert names(db.tax_list("Mustela nivalis")) == [
        "Mustela vulgaris",
        "Mustela rixosa",
        "Mustela nivalis corsicana",
    ]


def test_add_names():
    """Test adding a list of species names, with their genera."""

    db = DB()
    db.add("Hominidae", "", Rank.FAMILY, True)

    new_names = [
        "homo sapiens",
        "Pan paniscus",
        "# Comment",
        "",
        "Homo sapiens",
        "Pan troglodytes",
    ]
    added = add_names(
        db,
        new_names,
        parent="hominidae",
        rank=Rank.SPECIES,
    )

    assert names(added) == [
        "Homo",
        "Homo sapiens",
        "Pan",
        "Pan paniscus",
        "Pan troglodytes",
    ]
    assert db.tax_ed("Homo").parent == "Hominidae"
    assert db.tax_ed("Homo").rank == Rank.GENUS
    assert db.tax_ed("Pan troglodytes").parent == "Pan"


def test_add_names_synonyms():
    """Test adding synonyms, which are attached to the parent."""

    db = DB()
    db.add("Homo", "", Rank.GENUS, True)

    added = add_names(
        db, ["Pithecanthropus erectus"], parent="Homo", rank=Rank.SPECIES, correct=False
    )

    assert names(added) == ["Pithecanthropus erectus"]
    assert names(tax_list(db.synonyms("Homo"))) == ["Pithecanthropus erectus"]

    with pytest.raises(TaxonomyError):
        add_names(db, ["Sinanthropus"], parent="Sinanthropidae")


def test_collapse_unranked():
    """Test that unranked taxa become synonyms of their parents."""

    db = DB()
    db.add("Canis", "", Rank.GENUS, True)
    db.add("Canis latrans", "Canis", Rank.SPECIES, True)
    db.add("Canis latrans latrans", "Canis latrans", Rank.UNRANKED, True)
    db.add("Canis latrans ochropus", "Canis latrans", Rank.UNRANKED, True)
    db.add("Caninae", "", Rank.UNRANKED, True)

    assert collapse_unranked(db) == 2

    assert names(tax_list(db.synonyms("Canis latrans"))) == [
        "Canis latrans latrans",
        "Canis latrans ochropus",
    ]
    assert db.tax_ed("Caninae").correct
