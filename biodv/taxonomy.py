"""This module implements the local taxonomy, a hierarchical linnean ranked taxonomy
stored in a project directory.

The taxonomy is held by a [DB][biodv.taxonomy.DB] instance, which owns every taxon
and is the only way to change the taxonomy. Taxa are identified by their canonical
name and the [Taxon][biodv.taxonomy.Taxon] objects returned by the DB are thin handles
that identify a taxon by its name and delegate any change to the DB.

Every change is validated before it is applied, so a rejected operation leaves the
taxonomy unchanged. The rules that are kept are:

1. The parent of a taxon must be in the taxonomy and must be a correct name: a
   synonym can not be a parent.
2. A synonym must have a parent: only correct names can be attached to the root.
3. Walking up from a taxon, skipping any unranked ancestors, the first ranked
   ancestor must have a more inclusive rank than the taxon. A synonym can have the
   same rank as its ranked ancestor, representing a synonym of the same rank as its
   senior name.
4. Taxon names are unique.

The taxonomy is stored as a stanza file in `taxonomy/taxonomy.stz`, inside the project
directory. Records are written in pre-order (each taxon before its descendants), so
that a parent is always read before its children.
"""  # noqa D415

import os
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import TextIO

from biodv.logger import LOGGER, log_and_raise
from biodv.stanza import StanzaError, StanzaWriter, read_records
from biodv.taxon import (
    EXTERN,
    PROTECTED_KEYS,
    Rank,
    Record,
    TaxonRecord,
    Taxonomy,
    TaxScan,
    normalize_key,
    sort_synonyms,
    split_tag,
    tax_canon,
    update_extern,
)

TAXONOMY_DIR = "taxonomy"
TAXONOMY_FILE = "taxonomy.stz"

# Structural fields are written first in every record
FIELD_ORDER = ["name", "parent", "rank", "correct"]


class TaxonomyError(Exception):
    """Exception class for invalid taxonomy operations.

    Attributes:
        message: explanation of the error
    """

    def __init__(self, message="Invalid taxonomy operation"):
        self.message = message
        super().__init__(self.message)


class Taxon(TaxonRecord):
    """A handle onto a taxon stored in a DB.

    The handle only keeps the name of the taxon and a reference to its DB: all values
    are read from the DB when requested, and all changes are made through the DB, so
    the handle always reflects the current state of the taxonomy.

    Args:
        db: The DB that stores the taxon
        name: The canonical name of the taxon
    """

    def __init__(self, db: "DB", name: str) -> None:
        self.db = db
        self._name = name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Taxon):
            return NotImplemented
        return self.db is other.db and self._name == other._name

    def __hash__(self) -> int:
        return hash((id(self.db), self._name))

    @property
    def _record(self) -> Record:
        return self.db._get(self._name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def id(self) -> str:
        return self._name

    @property
    def parent(self) -> str:
        return self._record.parent

    @property
    def rank(self) -> Rank:
        return self._record.rank

    @property
    def correct(self) -> bool:
        return self._record.correct

    def keys(self) -> list[str]:
        return self._record.keys()

    def value(self, key: str) -> str:
        return self._record.value(key)

    def set(self, key: str, value: str) -> None:
        """Set the value of a field. See [DB.set_value][biodv.taxonomy.DB.set_value]."""
        self.db.set_value(self._name, key, value)

    def move(self, parent: str, correct: bool) -> None:
        """Move the taxon to a new parent. See [DB.move][biodv.taxonomy.DB.move]."""
        self.db.move(self._name, parent, correct)

    def set_rank(self, rank: Rank) -> None:
        """Change the rank. See [DB.set_rank][biodv.taxonomy.DB.set_rank]."""
        self.db.set_rank(self._name, rank)

    def delete(self, recurse: bool = False) -> None:
        """Remove the taxon. See [DB.delete][biodv.taxonomy.DB.delete]."""
        self.db.delete(self._name, recurse=recurse)


class DB(Taxonomy):
    """A local taxonomy.

    The DB keeps the records of the taxa, indexed by name, along with the list of
    descendants (correct children and synonyms) of each taxon, in insertion order. The
    root of the taxonomy is stored with the empty string as its ID. An index of the
    extern IDs is used to find taxa by their `service:id` tags.

    A new DB is empty: use [DB.open][biodv.taxonomy.DB.open] to read the taxonomy of a
    project directory. The ``changed`` attribute records whether the taxonomy has
    been modified since it was read or last written.

    Args:
        path: The project directory used to store the taxonomy. A DB without a path
            is kept in memory and can not be committed.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = None if path is None else Path(path)
        self.changed = False
        self._records: dict[str, Record] = {}
        self._descendants: dict[str, list[str]] = {"": []}
        self._extern: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return tax_canon(name) in self._records

    @property
    def file_path(self) -> Path | None:
        """The path of the stanza file holding the taxonomy."""
        if self.path is None:
            return None
        return self.path / TAXONOMY_DIR / TAXONOMY_FILE

    @classmethod
    def open(cls, path: str | Path = ".") -> "DB":
        """Open the taxonomy of a project directory.

        A missing taxonomy file is not an error: it is simply an empty taxonomy.

        Args:
            path: The project directory.

        Raises:
            TaxonomyError: if the file is not a valid taxonomy.
        """

        db = cls(path)
        file_path = db.file_path

        if file_path is not None and file_path.exists():
            LOGGER.debug(f"Reading taxonomy from {file_path}")
            with open(file_path, encoding="utf-8") as stream:
                db.load(stream)

        return db

    def load(self, stream: TextIO) -> None:
        """Load taxa from a stanza stream.

        Parents must be defined before their children in the stream. Loading does not
        mark the DB as changed.

        Args:
            stream: A text stream of stanza records.

        Raises:
            TaxonomyError: if a record is not a valid taxon.
        """

        changed = self.changed
        try:
            for data in read_records(stream):
                self._load_record(data)
        except StanzaError as excep:
            log_and_raise(f"Bad taxonomy file: {excep}", TaxonomyError)

        self.changed = changed

    def _load_record(self, data: dict[str, str]) -> None:
        rec = Record(data)

        # Every taxon is added with the same validation used by add
        try:
            tax = self.add(rec.name, rec.parent, rec.rank, rec.correct)
            stored = self._get(tax.name)
            for key in rec.keys():
                if key == EXTERN:
                    for token in rec.value(EXTERN).split():
                        self._set_extern(stored, token)
                    continue
                stored.data[key] = rec.value(key)
        except TaxonomyError as excep:
            log_and_raise(f"Bad taxonomy file: {excep.message}", TaxonomyError)

    def commit(self) -> None:
        """Write the taxonomy to the project directory, if it has been changed.

        Raises:
            TaxonomyError: if the DB has no project directory.
        """

        if not self.changed:
            return

        file_path = self.file_path
        if file_path is None:
            raise TaxonomyError("Cannot commit a taxonomy without a path")

        os.makedirs(file_path.parent, exist_ok=True)

        # Write to a temporary file and replace the taxonomy only on success
        tmp_path = file_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as stream:
            self.write(stream)
        os.replace(tmp_path, file_path)

        LOGGER.debug(f"Taxonomy written to {file_path}")
        self.changed = False

    def write(self, stream: TextIO) -> None:
        """Write all taxa as stanza records, each taxon before its descendants."""

        writer = StanzaWriter(stream, fields=FIELD_ORDER)
        for name in self._preorder(""):
            writer.write(self._records[name].data)

    def _preorder(self, id: str) -> Iterator[str]:
        for desc in self._sorted_descendants(id):
            yield desc
            yield from self._preorder(desc)

    #
    # Queries
    #

    def _get(self, name: str) -> Record:
        try:
            return self._records[name]
        except KeyError:
            raise TaxonomyError(f"Taxon '{name}' not in database")

    def _handles(self, names: list[str]) -> Iterator[Taxon]:
        for name in names:
            if name in self._records:
                yield Taxon(self, name)

    def taxon_by_name(self, name: str) -> TaxScan:
        name = tax_canon(name)
        return TaxScan(self._handles([name] if name else []))

    def taxon_by_id(self, id: str) -> Taxon | None:
        name = tax_canon(id)
        if not name:
            raise ValueError("Empty taxon ID")
        if name not in self._records:
            return None
        return Taxon(self, name)

    def tax_ed(self, id: str) -> Taxon | None:
        """Return a taxon by its name, or by an extern `service:id` tag.

        Args:
            id: A taxon name, or a `service:id` tag.
        """

        id = id.strip()
        if not id:
            return None

        if ":" in id:
            service, ext_id = split_tag(id)
            name = self._extern.get(f"{service}:{ext_id}")
            return None if name is None else Taxon(self, name)

        name = tax_canon(id)
        return Taxon(self, name) if name in self._records else None

    def _correct_children(self, id: str) -> list[str]:
        descendants = self._descendants.get(id, [])
        return sorted(n for n in descendants if self._records[n].correct)

    def _synonyms(self, id: str) -> list[str]:
        syns = [
            self._records[n]
            for n in self._descendants.get(id, [])
            if not self._records[n].correct
        ]
        return [s.name for s in sort_synonyms(syns)]

    def _sorted_descendants(self, id: str) -> list[str]:
        return self._correct_children(id) + self._synonyms(id)

    def children(self, id: str) -> TaxScan:
        return TaxScan(self._handles(self._correct_children(tax_canon(id))))

    def synonyms(self, id: str) -> TaxScan:
        name = tax_canon(id)
        if not name:
            return TaxScan([])
        return TaxScan(self._handles(self._synonyms(name)))

    def tax_list(self, id: str = "") -> list[Taxon]:
        """Return all the descendants of a taxon.

        Correct children are returned first, sorted by name, followed by the synonyms,
        sorted by their year of description (names without a year last) and then by
        name.

        Args:
            id: The name of the taxon, or an empty string for the root taxa.
        """
        return list(self._handles(self._sorted_descendants(tax_canon(id))))

    def effective_rank(self, id: str) -> Rank:
        """Return the rank of a taxon, or of its nearest ranked ancestor if unranked."""

        name = tax_canon(id)
        while name:
            rec = self._get(name)
            if rec.rank != Rank.UNRANKED:
                return rec.rank
            name = rec.parent
        return Rank.UNRANKED

    #
    # Validation
    #

    def _is_consistent_down(self, parent: str, correct: bool, rank: Rank) -> bool:
        """Check a rank against the nearest ranked ancestor, starting at parent."""

        if rank == Rank.UNRANKED:
            return True

        while parent:
            rec = self._records[parent]
            if rec.rank == Rank.UNRANKED:
                parent = rec.parent
                continue
            return rank > rec.rank or (rank == rec.rank and not correct)

        return True

    def _ranked_descendants(self, name: str) -> Iterator[Record]:
        """Yield the nearest ranked descendants of a taxon."""

        for desc in self._descendants[name]:
            rec = self._records[desc]
            if rec.rank == Rank.UNRANKED:
                yield from self._ranked_descendants(desc)
            else:
                yield rec

    def _fits_under(self, parent: str, name: str) -> bool:
        """Check if a taxon, and its descendants, can be attached to parent."""

        rec = self._records[name]
        if not rec.correct and not parent:
            return False
        if rec.rank != Rank.UNRANKED:
            return self._is_consistent_down(parent, rec.correct, rec.rank)
        return all(
            self._is_consistent_down(parent, desc.correct, desc.rank)
            for desc in self._ranked_descendants(name)
        )

    def _check_parent(self, name: str, parent: str, correct: bool) -> None:
        if parent:
            if parent not in self._records:
                raise TaxonomyError(f"{name}: parent '{parent}' not in database")
            if not self._records[parent].correct:
                raise TaxonomyError(f"{name}: parent '{parent}' is a synonym")
        elif not correct:
            raise TaxonomyError(f"{name}: synonym without a parent")

    #
    # Changes
    #

    def add(
        self,
        name: str,
        parent: str = "",
        rank: Rank = Rank.UNRANKED,
        correct: bool = True,
    ) -> Taxon:
        """Add a new taxon to the taxonomy.

        Args:
            name: The taxon name, which is stored in its canonical form
            parent: The name of the parent, or an empty string for a root taxon
            rank: The rank of the taxon
            correct: Whether the taxon is a correct name or a synonym

        Raises:
            TaxonomyError: if the name is empty or already in the taxonomy, if the
                parent is not in the taxonomy or is a synonym, if the rank is not
                consistent with the ranks of the ancestors, or if a synonym is added to
                the root.

        Returns:
            The new taxon.
        """

        name = tax_canon(name)
        if not name:
            raise TaxonomyError("Empty taxon name")
        if name in self._records:
            raise TaxonomyError(f"{name}: taxon already in database")

        parent = tax_canon(parent)
        rank = Rank(rank)
        self._check_parent(name, parent, correct)
        if not self._is_consistent_down(parent, correct, rank):
            raise TaxonomyError(f"{name}: inconsistent rank '{rank}'")

        self._records[name] = Record(
            {
                "name": name,
                "parent": parent,
                "rank": str(rank),
                "correct": "true" if correct else "false",
            }
        )
        self._descendants[parent].append(name)
        self._descendants[name] = []
        self.changed = True

        return Taxon(self, name)

    def move(self, name: str, parent: str, correct: bool) -> None:
        """Move a taxon to a new parent, or change its status.

        The descendants of the taxon (correct children and synonyms) do not stay
        with it: all of them are moved as descendants of the new parent, each one
        keeping its own descendants. A synonym can then never be left as a parent.

        Moving a synonym to its current parent as a correct name, or a correct name to
        its current parent as a synonym, is a change of status. A move to the current
        parent with the current status changes nothing.

        Args:
            name: The taxon to move
            parent: The name of the new parent, or an empty string to move to the root
            correct: The new status of the taxon

        Raises:
            TaxonomyError: if the taxon is not in the taxonomy, if the new parent is not
                valid or is a descendant of the taxon, or if the ranks of the taxon or
                of the moved descendants are not consistent with the new parent.
        """

        name = tax_canon(name)
        rec = self._get(name)
        parent = tax_canon(parent)

        self._check_parent(name, parent, correct)

        # The new parent can not be the taxon or one of its descendants
        anc = parent
        while anc:
            if anc == name:
                raise TaxonomyError(f"{name}: can not be moved into its descendants")
            anc = self._records[anc].parent

        if rec.parent == parent and rec.correct == correct:
            return

        if not self._is_consistent_down(parent, correct, rec.rank):
            raise TaxonomyError(f"{name}: inconsistent rank '{rec.rank}'")

        descendants = self._descendants[name]
        for desc in descendants:
            if not self._fits_under(parent, desc):
                raise TaxonomyError(
                    f"{name}: descendant '{desc}' can not be moved to '{parent}'"
                )

        self._descendants[rec.parent].remove(name)
        self._descendants[parent].append(name)
        rec.data["parent"] = parent
        rec.data["correct"] = "true" if correct else "false"

        for desc in descendants:
            self._records[desc].data["parent"] = parent
            self._descendants[parent].append(desc)
        self._descendants[name] = []

        self.changed = True

    def graft(self, name: str, parent: str) -> None:
        """Attach a root taxon, with all of its descendants, to a parent.

        This is used to fill in the missing ancestors of the root taxa. Unlike
        [move][biodv.taxonomy.DB.move] the descendants stay with the taxon.

        Args:
            name: The root taxon
            parent: The name of the new parent

        Raises:
            TaxonomyError: if the taxon is not in the taxonomy or is not a root taxon,
                if the parent is not valid, or if the ranks of the taxon or its
                descendants are not consistent with the parent.
        """

        name = tax_canon(name)
        rec = self._get(name)
        parent = tax_canon(parent)

        if rec.parent:
            raise TaxonomyError(f"{name}: not a root taxon")
        if not parent:
            return

        self._check_parent(name, parent, rec.correct)
        if not self._fits_under(parent, name):
            raise TaxonomyError(f"{name}: inconsistent rank '{rec.rank}'")

        self._descendants[""].remove(name)
        self._descendants[parent].append(name)
        rec.data["parent"] = parent
        self.changed = True

    def set_rank(self, name: str, rank: Rank) -> None:
        """Change the rank of a taxon.

        Args:
            name: The taxon name
            rank: The new rank

        Raises:
            TaxonomyError: if the taxon is not in the taxonomy, or if the new rank is
                not consistent with the ranks of its ancestors or descendants.
        """

        name = tax_canon(name)
        rec = self._get(name)
        rank = Rank(rank)

        if rec.rank == rank:
            return

        if rank != Rank.UNRANKED:
            if not self._is_consistent_down(rec.parent, rec.correct, rank):
                raise TaxonomyError(f"{name}: rank '{rank}' inconsistent with parent")

            for desc in self._ranked_descendants(name):
                if not (desc.rank > rank or (desc.rank == rank and not desc.correct)):
                    raise TaxonomyError(
                        f"{name}: rank '{rank}' inconsistent with '{desc.name}'"
                    )

        rec.data["rank"] = str(rank)
        self.changed = True

    def set_value(self, name: str, key: str, value: str) -> None:
        """Set the value of a field of a taxon.

        The key is reformatted to lower case, with spaces replaced by a dash. The
        structural fields (name, parent, rank and correct) are protected and must be
        changed with the corresponding operations. An empty value removes the field.

        The `extern` field holds the IDs of the taxon in external services. A value of
        the form `service:id` sets the ID for that service, and a value of the form
        `service:` removes it. An extern ID can only be assigned to a single taxon.

        Args:
            name: The taxon name
            key: The field to set
            value: The new value

        Raises:
            TaxonomyError: if the taxon is not in the taxonomy, the key is empty or
                protected, or the extern value is not valid.
        """

        rec = self._get(tax_canon(name))
        key = normalize_key(key)
        value = value.strip()

        if not key:
            raise TaxonomyError(f"{rec.name}: empty key")
        if key in PROTECTED_KEYS:
            raise TaxonomyError(f"{rec.name}: key '{key}' can not be set as a value")

        if key == EXTERN:
            if value:
                self._set_extern(rec, value)
            return

        if rec.data.get(key, "") == value:
            return

        if value:
            rec.data[key] = value
        else:
            del rec.data[key]
        self.changed = True

    def _set_extern(self, rec: Record, value: str) -> None:
        current = rec.data.get(EXTERN, "")

        def _in_use(token: str) -> bool:
            return self._extern.get(token, rec.name) != rec.name

        try:
            new = update_extern(current, value, in_use=_in_use)
        except ValueError as excep:
            raise TaxonomyError(f"{rec.name}: {excep}")

        if new == current:
            return

        for token in current.split():
            self._extern.pop(token, None)
        for token in new.split():
            self._extern[token] = rec.name

        if new:
            rec.data[EXTERN] = new
        else:
            del rec.data[EXTERN]
        self.changed = True

    def delete(self, name: str, recurse: bool = False) -> None:
        """Remove a taxon from the taxonomy.

        If ``recurse`` is set, the taxon is removed with all of its descendants.
        Otherwise the descendants of the taxon are moved to the parent of the removed
        taxon. If the removed taxon is a root taxon, its correct children become root
        taxa and its synonyms are removed, as synonyms can not be attached to the root.

        Args:
            name: The taxon name
            recurse: Remove all the descendants of the taxon

        Raises:
            TaxonomyError: if the taxon is not in the taxonomy.
        """

        name = tax_canon(name)
        rec = self._get(name)
        parent = rec.parent

        for desc in list(self._descendants[name]):
            desc_rec = self._records[desc]
            if recurse or (not parent and not desc_rec.correct):
                self._remove(desc, recurse=True)
                continue
            desc_rec.data["parent"] = parent
            self._descendants[parent].append(desc)

        self._descendants[name] = []
        self._remove(name, recurse=False)
        self.changed = True

    def _remove(self, name: str, recurse: bool) -> None:
        if recurse:
            for desc in list(self._descendants[name]):
                self._remove(desc, recurse=True)

        rec = self._records.pop(name)
        for token in rec.value(EXTERN).split():
            self._extern.pop(token, None)
        self._descendants[rec.parent].remove(name)
        del self._descendants[name]


def add_names(
    db: DB,
    names: Iterable[str],
    parent: str = "",
    rank: Rank = Rank.UNRANKED,
    correct: bool = True,
) -> list[Taxon]:
    """Add a list of names to the taxonomy.

    Names that are already in the taxonomy, or that do not start with a letter (so
    comment lines are ignored), are skipped. When correct species are added, the
    genus (the first word of the name) is used as the parent, and it is added if it is
    not in the taxonomy.

    Args:
        db: The taxonomy
        names: The names to add
        parent: The parent of the new taxa
        rank: The rank of the new taxa
        correct: Whether the new taxa are correct names or synonyms

    Raises:
        TaxonomyError: if the parent is not in the taxonomy, or a name can not be
            added. The names before the failing one remain added.

    Returns:
        The new taxa, including any new genus.
    """

    if parent:
        ptax = db.tax_ed(parent)
        if ptax is None:
            raise TaxonomyError(f"Parent '{parent}' not in database")
        parent = ptax.name

    added = []
    for name in names:
        name = tax_canon(name)
        if not name or not name[0].isalpha() or name in db:
            continue

        pname = parent
        if rank == Rank.SPECIES and correct:
            genus = tax_canon(name.split()[0])
            if genus not in db:
                added.append(db.add(genus, pname, Rank.GENUS, True))
            pname = genus

        added.append(db.add(name, pname, rank, correct))

    return added


def collapse_unranked(db: DB, name: str = "") -> int:
    """Make synonyms of all unranked taxa that are not attached to the root.

    Each unranked correct taxon is moved as a synonym of its parent, so that the
    only correct names are ranked names (e.g. subspecies become synonyms of their
    species). Descendants are processed before their ancestors.

    Args:
        db: The taxonomy
        name: Only collapse the descendants of this taxon (all taxa if empty)

    Returns:
        The number of collapsed taxa.
    """

    def _collapse(tax: Taxon) -> int:
        count = 0
        while True:
            found = 0
            for child in db.tax_list(tax.id):
                if child.correct:
                    found += _collapse(child)
            if not found:
                break
            count += found

        if tax.rank != Rank.UNRANKED or not tax.parent:
            return count

        try:
            tax.move(tax.parent, False)
        except TaxonomyError as excep:
            LOGGER.warning(f"Unable to collapse {tax.name}: {excep.message}")
            return count

        return count + 1

    if name:
        tax = db.tax_ed(name)
        if tax is None:
            raise TaxonomyError(f"Taxon '{name}' not in database")
        return _collapse(tax)

    return sum(_collapse(tax) for tax in db.tax_list(""))
