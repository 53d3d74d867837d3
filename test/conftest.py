"""Collection of fixtures to assist the testing scripts."""

import os
import sys

import appdirs
import pytest
from dotmap import DotMap

from biodv.dataset import SetDB
from biodv.gbif import GBIFDataset, GBIFError, GBIFTaxon
from biodv.resources import Resources
from biodv.taxon import Taxonomy, TaxScan
from biodv.taxonomy import DB


def fixture_files():
    """Function to direct test functions to the fixture files.

    Whenever testing is run, this conftest file is loaded and the path of the
    file can be used to provide paths to the location of all other testing and
    fixture files on a given test system. This helps make sure that absolute
    paths are maintained so that testing is not sensitive to the directory where
    tests are run.

    The Dotmap contains real files (.rf) that will be copied into the fake
    filesystem, along with key paths to virtual files (.vf) created within the
    same system. A missing file (.mf) is also provided to test responses to
    missing files.
    """

    fixture_dir = os.path.join(os.path.dirname(__file__), "fixtures")

    real_files = [
        ("taxonomy_file", "hominidae.stz"),
        ("bad_taxonomy_file", "bad_taxonomy.stz"),
    ]

    real_files = {ky: os.path.join(fixture_dir, vl) for ky, vl in real_files}

    # Virtual file paths for the locations of config files and the project.
    virtual_files = {
        "user_config": os.path.join(appdirs.user_config_dir(), "biodv", "biodv.cfg"),
        "site_config": os.path.join(appdirs.site_config_dir(), "biodv", "biodv.cfg"),
        "fix_config": os.path.join(fixture_dir, "biodv.cfg"),
        "project_dir": os.path.join(fixture_dir, "project"),
        "project_taxonomy": os.path.join(
            fixture_dir, "project", "taxonomy", "taxonomy.stz"
        ),
    }

    return DotMap(
        dict(
            rf=real_files,
            vf=virtual_files,
            mf=os.path.join(fixture_dir, "thisfiledoesnotexist"),
        )
    )


FIXTURE_FILES = fixture_files()
"""DotMap: This global variable contains a dotmap of the paths of various
key testing files. This could be a fixture, but these paths are used with
parameterisation as well as within tests, and using fixture values in
parameterisation is clumsy and complex.
"""


def config_contents():
    """The contents of the fixture configuration file."""

    return [
        f"data_dir = {FIXTURE_FILES.vf.project_dir}",
        "[gbif]",
        "retry = 2",
        "wait = 0.0",
        "[sync]",
        "max_iterations = 3",
    ]


@pytest.fixture()
def config_filesystem(fs, monkeypatch):
    """Create a config and project file system for testing.

    Testing requires access to the configuration files for the package resources
    and the paths to these files are going to differ across test system. This
    fixture uses the pyfakefs plugin for pytest to create a fake file system
    containing a config file and a project directory holding a copy of the
    fixture taxonomy.

    Args:
        fs: The pyfakefs plugin object
        monkeypatch: The pytest monkeypatch fixture

    Returns:
        A fake filesystem containing copies of key actual fixture files in their
        correct location, along with virtual config files containing the correct
        paths to the project directory.
    """

    monkeypatch.delenv("BIODV_CONFIG", raising=False)

    # Point to real locations of test fixture files
    for ky, val in FIXTURE_FILES.rf.items():
        fs.add_real_file(val)

    with open(FIXTURE_FILES.rf.taxonomy_file, encoding="utf-8") as infile:
        fs.create_file(FIXTURE_FILES.vf.project_taxonomy, contents=infile.read())

    fs.create_file(FIXTURE_FILES.vf.fix_config, contents="\n".join(config_contents()))

    yield fs


@pytest.fixture()
def user_config_file(config_filesystem):
    """Creates local user config.

    Duplicate of the existing config in the fixture directory
    """

    with open(FIXTURE_FILES.vf.fix_config) as infile:
        config_filesystem.create_file(
            FIXTURE_FILES.vf.user_config, contents="".join(infile.readlines())
        )

    yield config_filesystem


@pytest.fixture()
def site_config_file(config_filesystem):
    """Creates local site config.

    Duplicate of the existing config in the fixture directory
    """
    with open(FIXTURE_FILES.vf.fix_config) as infile:
        config_filesystem.create_file(
            FIXTURE_FILES.vf.site_config, contents="".join(infile.readlines())
        )

    yield config_filesystem


# Helper function for validation of log contents


def log_check(caplog, expected_log):
    """Helper function to check that the captured log is as expected.

    Arguments:
        caplog: An instance of the caplog fixture
        expected_log: An iterable of 2-tuples containing the
            log level and message.
    """

    assert len(expected_log) == len(caplog.records)

    level_correct = [
        exp[0] == rec.levelno for exp, rec in zip(expected_log, caplog.records)
    ]

    message_correct = [
        exp[1] in rec.message for exp, rec in zip(expected_log, caplog.records)
    ]

    if not all(level_correct):
        failed_records = (
            (exp, obs)
            for passed, exp, obs in zip(level_correct, expected_log, caplog.records)
            if not passed
        )
        for exp, obs in failed_records:
            sys.stderr.write(f"Log level mismatch: {exp}, {obs.levelno, obs.message}")

        assert False

    if not all(message_correct):
        failed_records = (
            (exp, obs)
            for passed, exp, obs in zip(message_correct, expected_log, caplog.records)
            if not passed
        )
        for exp, obs in failed_records:
            sys.stderr.write(f"Log message mismatch: {exp}, {obs.levelno, obs.message}")

        assert False


# ------------------------------------------
# Resources: fixtures containing local Resources instances
# ------------------------------------------


@pytest.fixture()
def fixture_resources(config_filesystem):
    """Creates a Resource object configured to use the fixture project.

    Returns:
        A biodv.resources.Resources instance
    """

    return Resources(config=FIXTURE_FILES.vf.fix_config)


# ------------------------------------------
# Taxonomies: a local taxonomy and a fake external taxonomy
# ------------------------------------------


@pytest.fixture()
def fixture_db():
    """A local taxonomy, kept in memory, loaded with the Hominidae fixture."""

    db = DB()
    with open(FIXTURE_FILES.rf.taxonomy_file, encoding="utf-8") as stream:
        db.load(stream)

    return db


def usage(key, name, rank, parent=0, accepted=0, author="", **kwargs):
    """Build a GBIF species API answer for a backbone name usage."""

    data = {
        "key": key,
        "nubKey": key,
        "canonicalName": name,
        "rank": rank,
        "authorship": author,
        "synonym": bool(accepted),
    }
    if parent:
        data["parentKey"] = parent
    if accepted:
        data["acceptedKey"] = accepted
    data.update(kwargs)
    return data


COL_KEY = "7ddf754f-d193-4cc9-b351-99906754a03b"

GBIF_USAGES = [
    usage(1, "Animalia", "KINGDOM"),
    usage(10, "Chordata", "PHYLUM", parent=1),
    usage(20, "Mammalia", "CLASS", parent=10),
    usage(30, "Primates", "ORDER", parent=20),
    usage(40, "Hominidae", "FAMILY", parent=30, author="Gray, 1825"),
    usage(50, "Homo", "GENUS", parent=40, author="Linnaeus, 1758"),
    usage(
        51,
        "Homo sapiens",
        "SPECIES",
        parent=50,
        author="Linnaeus, 1758",
        constituentKey=COL_KEY,
        publishedIn="Syst. Nat., 10th ed.",
    ),
    usage(52, "Homo sapiens sapiens", "SUBSPECIES", parent=51),
    usage(53, "Homo erectus", "SPECIES", parent=50, author="(Dubois, 1892)"),
    usage(54, "Pithecanthropus", "GENUS", accepted=50, author="Dubois, 1894"),
    usage(55, "Pithecanthropus erectus", "SPECIES", accepted=53, author="Dubois, 1892"),
    usage(60, "Pan", "GENUS", parent=40, author="Oken, 1816"),
    usage(61, "Pan paniscus", "SPECIES", parent=60, author="Schwarz, 1929"),
    usage(62, "Pan troglodytes", "SPECIES", parent=60, author="(Blumenbach, 1775)"),
    usage(90, "Plantae", "KINGDOM"),
    usage(91, "Pan", "GENUS", parent=90),
]
"""list: Name usages of a small cut of the GBIF backbone, with a homonym (Pan)."""

GBIF_DATASETS = [
    {
        "key": COL_KEY,
        "title": "Catalogue of Life",
        "description": "A global index of the world's known species.",
        "license": "http://creativecommons.org/licenses/by/4.0/legalcode",
    }
]


class FakeTaxonomy(Taxonomy):
    """An external taxonomy kept in memory, answering like the GBIF driver.

    Args:
        usages: A list of GBIF species API answers
        failing: IDs for which requests fail with a GBIFError
    """

    def __init__(self, usages, failing=()):
        self.taxa = {}
        for data in usages:
            tx = GBIFTaxon.from_json(data)
            self.taxa[tx.id] = tx
        self.failing = set(failing)

    def _check(self, id):
        if id in self.failing:
            raise GBIFError(f"No answer for {id}")

    def taxon_by_name(self, name):
        name = " ".join(name.split()).lower()
        return TaxScan([tx for tx in self.taxa.values() if tx.name.lower() == name])

    def taxon_by_id(self, id):
        id = id.strip()
        if not id:
            raise ValueError("Empty taxon ID")
        self._check(id)
        return self.taxa.get(id)

    def children(self, id):
        self._check(id)
        return TaxScan(
            [tx for tx in self.taxa.values() if tx.correct and tx.parent == id]
        )

    def synonyms(self, id):
        self._check(id)
        return TaxScan(
            [tx for tx in self.taxa.values() if not tx.correct and tx.parent == id]
        )


class FakeDatasets(SetDB):
    """An external dataset store kept in memory."""

    def __init__(self, datasets):
        self.datasets = {data["key"]: GBIFDataset(data) for data in datasets}

    def set_id(self, id):
        return self.datasets.get(id)


@pytest.fixture()
def fixture_remote():
    """A fake external taxonomy with a cut of the GBIF backbone."""

    return FakeTaxonomy(GBIF_USAGES)


@pytest.fixture()
def fixture_remote_sets():
    """A fake external dataset store."""

    return FakeDatasets(GBIF_DATASETS)
