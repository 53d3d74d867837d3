"""This module provides the basic vocabulary shared by every taxonomy in the package.

The [Rank][biodv.taxon.Rank] enumeration gives the ordered set of linnean ranks used
to organise a taxonomy, and the [tax_canon][biodv.taxon.tax_canon] function provides
the canonical form of a taxon name, which is used as the taxon identifier in a local
taxonomy.

Two abstract classes describe how taxonomic data is queried, regardless of whether it
comes from the local taxonomy or from a remote web service:

- [TaxonRecord][biodv.taxon.TaxonRecord] is a single taxon, with a name, an ID, a
  parent ID, a rank, a status (correct or synonym) and a set of additional fields
  accessed by key.

- [Taxonomy][biodv.taxon.Taxonomy] is a source of taxa that can be searched by name or
  ID, and that can list the children and synonyms of a taxon.

Queries that return several taxa return a [TaxScan][biodv.taxon.TaxScan], a lazy
iterator over the results. A scan must be either drained or closed: closing a scan
abandons the underlying producer, and any error raised by the producer is raised by
the scan, so a normal end of the results is never confused with a failure.

The external identifiers of a taxon are stored under the `extern` key, as a space
separated list of `service:id` tokens (e.g. `gbif:2436436`), and the functions at the
end of this module are used to read and update those tokens.
"""  # noqa D415

import abc
import datetime
from collections.abc import Callable, Iterable, Iterator
from enum import IntEnum
from typing import Optional

# Common keys used for a taxon
AUTHOR = "author"
EXTERN = "extern"
REFERENCE = "reference"
SOURCE = "source"

# Keys that store the structure of a taxonomy and can not be set as plain values
PROTECTED_KEYS = ("name", "parent", "rank", "correct")

# Valid range for the year of description of a taxon name
FIRST_YEAR = 1750


class Rank(IntEnum):
    """The linnean ranks used in a taxonomy.

    Ranks are ordered from the most inclusive (kingdom) to the least inclusive
    (species), so that a taxon must always have a larger rank value than its ranked
    ancestors. The UNRANKED value is used for taxa without a defined rank and is
    smaller than every other rank.
    """

    UNRANKED = 0
    KINGDOM = 1
    PHYLUM = 2
    CLASS = 3
    ORDER = 4
    FAMILY = 5
    GENUS = 6
    SPECIES = 7

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str | None) -> "Rank":
        """Get a rank from a string, ignoring case.

        Unknown or empty values are returned as UNRANKED.

        Args:
            value: A rank name
        """
        if not value:
            return cls.UNRANKED

        return cls.__members__.get(value.strip().upper(), cls.UNRANKED)

    @classmethod
    def strict(cls, value: str) -> "Rank":
        """Get a rank from a string, ignoring case and rejecting unknown ranks.

        Args:
            value: A rank name

        Raises:
            ValueError: if the value is not a known rank.
        """
        try:
            return cls.__members__[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown rank: {value}")


def tax_canon(name: str | None) -> str:
    """Return a taxon name in its canonical form.

    The canonical form has single spaces between words and only the first letter in
    upper case, e.g. `  homo   SAPIENS` becomes `Homo sapiens`.

    Args:
        name: A taxon name
    """

    if name is None:
        return ""

    name = " ".join(name.split())
    if not name:
        return ""

    name = name.lower()
    return name[0].upper() + name[1:]


def author_year(author: str | None) -> int:
    """Extract the year of description from an author string.

    The year is read from the last four characters of the author string, ignoring any
    closing parenthesis, so both `Linnaeus, 1758` and `(Linnaeus, 1758)` give 1758.
    Years outside the range of zoological and botanical nomenclature, or in the
    future, are treated as missing.

    Args:
        author: An author string

    Returns:
        The year of description, or zero if no valid year is found.
    """

    if not author:
        return 0

    author = author.rstrip(")")
    if len(author) < 4:
        return 0

    try:
        year = int(author[-4:])
    except ValueError:
        return 0

    if year < FIRST_YEAR or year > datetime.date.today().year:
        return 0

    return year


def tax_year(taxon: Optional["TaxonRecord"]) -> int:
    """Return the year of description of a taxon, or zero if it is not known."""
    if taxon is None:
        return 0
    return author_year(taxon.value(AUTHOR))


def normalize_key(key: str) -> str:
    """Normalize a field key: lower case with internal spaces replaced by '-'."""
    return "-".join(key.lower().split())


class TaxonRecord(abc.ABC):
    """Abstract base class for a single taxon.

    Concrete taxa must provide the name, ID, parent ID, rank and status of the taxon,
    along with any additional fields (such as author or extern) through the
    [keys][biodv.taxon.TaxonRecord.keys] and [value][biodv.taxon.TaxonRecord.value]
    methods.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The canonical name of the taxon."""

    @property
    @abc.abstractmethod
    def id(self) -> str:
        """The ID of the taxon in its taxonomy."""

    @property
    @abc.abstractmethod
    def parent(self) -> str:
        """The ID of the parent taxon, or an empty string for a root taxon.

        The parent of a synonym is its senior, accepted, taxon.
        """

    @property
    @abc.abstractmethod
    def rank(self) -> Rank:
        """The rank of the taxon."""

    @property
    @abc.abstractmethod
    def correct(self) -> bool:
        """Is the taxon a correct (accepted) name?"""

    @abc.abstractmethod
    def keys(self) -> list[str]:
        """The sorted list of additional fields with a value in the taxon."""

    @abc.abstractmethod
    def value(self, key: str) -> str:
        """The value of an additional field, or an empty string if it is not set."""

    def __repr__(self) -> str:
        status = "" if self.correct else ", synonym"
        return f"{self.name} [{self.id}] ({self.rank}{status})"


class Record(TaxonRecord):
    """A taxon stored as a dictionary of string fields.

    This is the representation of a taxon in the stanza files used by the local
    stores: every field, including the structural fields `name`, `parent`, `rank` and
    `correct`, is a string value in the dictionary. The ID of a record is its name.

    Args:
        data: The field values of the taxon.
    """

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(data) if data else {}

    @property
    def name(self) -> str:
        return self.data.get("name", "")

    @property
    def id(self) -> str:
        return self.data.get("name", "")

    @property
    def parent(self) -> str:
        return self.data.get("parent", "")

    @property
    def rank(self) -> Rank:
        return Rank.parse(self.data.get("rank"))

    @property
    def correct(self) -> bool:
        return self.data.get("correct", "true").strip().lower() != "false"

    def keys(self) -> list[str]:
        return sorted(
            k for k, v in self.data.items() if k not in PROTECTED_KEYS and v != ""
        )

    def value(self, key: str) -> str:
        key = normalize_key(key)
        if not key:
            return ""
        return self.data.get(key, "")


class TaxScan:
    """A lazy sequence of taxa produced by a query.

    The scan wraps an iterable producer, typically a generator that reads the taxa
    from a local taxonomy or downloads them page by page from a web service. Taxa are
    produced one at a time, in the order given by the producer, as the scan is
    iterated.

    A scan can be abandoned before it is exhausted using
    [close][biodv.taxon.TaxScan.close], which closes the producer (and so releases any
    resources it holds). The scan can also be used as a context manager, which closes
    it on exit. Any exception raised by the producer is raised to the consumer and
    closes the scan, so that the end of the results and a failure are always
    distinguishable.

    Args:
        producer: An iterable of taxa.
    """

    def __init__(self, producer: Iterable[TaxonRecord]) -> None:
        self._producer = producer
        self._iter: Iterator[TaxonRecord] | None = None
        self.closed = False

    def __iter__(self) -> "TaxScan":
        return self

    def __next__(self) -> TaxonRecord:
        if self.closed:
            raise StopIteration

        if self._iter is None:
            self._iter = iter(self._producer)

        try:
            return next(self._iter)
        except StopIteration:
            self.closed = True
            raise
        except Exception:
            self.close()
            raise

    def __enter__(self) -> "TaxScan":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Abandon the scan, closing the producer."""
        if self.closed:
            return

        self.closed = True
        close = getattr(self._iter or self._producer, "close", None)
        if close is not None:
            close()


def tax_list(scan: TaxScan) -> list[TaxonRecord]:
    """Drain a scan and return the taxa as a list."""
    with scan:
        return list(scan)


def first(scan: TaxScan) -> TaxonRecord | None:
    """Return the first taxon of a scan and close it, or None for an empty scan."""
    with scan:
        return next(scan, None)


class Taxonomy(abc.ABC):
    """Abstract base class for a source of taxonomic data.

    This interface is implemented by the local taxonomy as well as by the drivers of
    external taxonomies, and it is the only interface used by the synchronization
    algorithms to read a taxonomy.
    """

    @abc.abstractmethod
    def taxon_by_name(self, name: str) -> TaxScan:
        """Return the taxa with a given name.

        A local taxonomy returns at most one taxon, but an external taxonomy can
        return many taxa with the same name (homonyms).
        """

    @abc.abstractmethod
    def taxon_by_id(self, id: str) -> TaxonRecord | None:
        """Return the taxon with a given ID, or None if there is no such taxon.

        Raises:
            ValueError: if the ID is empty.
        """

    @abc.abstractmethod
    def children(self, id: str) -> TaxScan:
        """Return the correct children of a taxon, or the root taxa if ID is empty."""

    @abc.abstractmethod
    def synonyms(self, id: str) -> TaxScan:
        """Return the synonyms of a taxon."""


def tax_parents(taxonomy: Taxonomy, id: str) -> list[TaxonRecord]:
    """Return the lineage of a taxon.

    Args:
        taxonomy: The taxonomy to search
        id: The ID of a taxon

    Returns:
        The list of ancestors of the taxon, from the most inclusive one down to the
        taxon itself. The list is empty if the ID is empty or not found.
    """

    lineage = []
    id = id.strip()
    while id:
        taxon = taxonomy.taxon_by_id(id)
        if taxon is None:
            break
        lineage.append(taxon)
        id = taxon.parent

    lineage.reverse()
    return lineage


def synonym_order(taxon: TaxonRecord) -> tuple[bool, int, str]:
    """Sort key for synonyms: by year of description, undated names last, then name."""
    year = tax_year(taxon)
    return (year == 0, year, taxon.name)


def sort_synonyms(taxa: Iterable[TaxonRecord]) -> list[TaxonRecord]:
    """Sort synonyms by year of description and then by name."""
    return sorted(taxa, key=synonym_order)


#
# External identifiers
#


def split_tag(value: str) -> tuple[str, str]:
    """Split a `service:id` string into its service and ID parts.

    Strings without a colon are returned as a service with an empty ID.
    """
    service, _, id = value.partition(":")
    return service.strip(), id.strip()


def extern_ids(taxon: TaxonRecord) -> list[str]:
    """Return the list of `service:id` tokens of a taxon."""
    return taxon.value(EXTERN).split()


def get_extern_id(taxon: TaxonRecord | None, service: str) -> str:
    """Return the ID of a taxon in an external service, or an empty string."""
    if taxon is None:
        return ""

    prefix = service + ":"
    for token in extern_ids(taxon):
        if token.startswith(prefix):
            return token[len(prefix) :]

    return ""


def update_extern(
    current: str, value: str, in_use: Callable[[str], bool] | None = None
) -> str:
    """Update a list of external identifiers.

    A value of the form `service:id` adds the token, replacing any previous ID for the
    same service. A value of the form `service:` removes the ID for that service.

    Args:
        current: The current space separated list of `service:id` tokens
        value: The token to add or the service to remove
        in_use: An optional callable that returns true if a token is already assigned
            to another element.

    Raises:
        ValueError: if the value is not a valid token or the token is already in use.

    Returns:
        The updated list of tokens.
    """

    service, id = split_tag(value)
    if not service or ":" not in value or " " in id:
        raise ValueError(f"Invalid extern value: {value}")

    prefix = service + ":"
    tokens = [tk for tk in current.split() if not tk.startswith(prefix)]

    if id:
        token = prefix + id
        if in_use is not None and token not in current.split() and in_use(token):
            raise ValueError(f"Extern ID already in use: {token}")
        tokens.append(token)

    return " ".join(tokens)
