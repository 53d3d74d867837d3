"""This module provides the algorithms used to synchronize the local taxonomy with an
external taxonomy, such as the GBIF backbone.

A local taxon is linked to its counterpart in an external taxonomy by a `service:id`
token in its `extern` field (e.g. `gbif:2436436`). The
[Synchronizer][biodv.sync.Synchronizer] class uses those links, and the name search
provided by the external taxonomy, to:

- add: import a list of names, optionally with their ancestors down to a given rank,
- fill: import the synonyms (and the children of species) of the linked taxa,
- fill_up: import the ancestors of the linked taxa up to a given rank,
- update: link the local taxa by name and copy the values of the external taxa,
- sync: reconcile the rank, status and parent of every linked taxon with the
  external taxonomy.

All of these operations are batch operations: problems with a single taxon (a name
that is not found, an ambiguous name, a rejected change or a failed request to the
external service) are logged as warnings and the operation continues with the next
taxon. The changes are applied to the local stores in memory and are only written by
[Synchronizer.commit][biodv.sync.Synchronizer.commit].

The full synchronization can not be done in a single pass, as the target parent of a
taxon can be created as a side effect of moving a different taxon. The moves and rank
changes are therefore retried for a limited number of passes and any taxon that is
still not resolved is returned in a [SyncReport][biodv.sync.SyncReport].
"""  # noqa D415

import dataclasses
from collections.abc import Callable, Iterable

from biodv.dataset import DatasetDB, DatasetError, SetDB
from biodv.drivers import DriverError, DriverRegistry, parse_driver_string
from biodv.gbif import GBIFError
from biodv.logger import LOGGER, loggerinfo_push_pop
from biodv.taxon import (
    EXTERN,
    SOURCE,
    Rank,
    TaxonRecord,
    Taxonomy,
    TaxScan,
    get_extern_id,
    tax_canon,
    tax_list,
)
from biodv.taxonomy import DB, Taxon, TaxonomyError

MAX_ITERATIONS = 5


@dataclasses.dataclass
class ExternTaxon:
    """The values of an external taxon used to reconcile a local taxon.

    Args:
        parent: The external ID of the parent (the senior name of a synonym)
        rank: The rank of the external taxon
        correct: Whether the external taxon is a correct name
    """

    parent: str
    rank: Rank
    correct: bool


@dataclasses.dataclass
class SyncReport:
    """The outcome of a full synchronization.

    Args:
        unmoved: Taxa that could not be moved to their external parent
        failed: Taxa that can never be moved, as their target parent is a synonym
        unranked: Taxa left without a rank, as their external rank was rejected
        moved: Taxa moved to a new parent or given a new status
        ranked: Taxa set to their external rank
    """

    unmoved: list[str] = dataclasses.field(default_factory=list)
    failed: list[str] = dataclasses.field(default_factory=list)
    unranked: list[str] = dataclasses.field(default_factory=list)
    moved: list[str] = dataclasses.field(default_factory=list)
    ranked: list[str] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Was every taxon reconciled?"""
        return not (self.unmoved or self.failed or self.unranked)


def _is_name(name: str) -> bool:
    return bool(name) and name[0].isalpha()


class Synchronizer:
    """Synchronize a local taxonomy with an external taxonomy.

    If a dataset store is provided along with the dataset driver of the external
    service, the `source` values of the imported taxa are stored as the titles of local
    datasets, creating the datasets as needed. Otherwise the source is stored as a
    `service:id` tag.

    Args:
        db: The local taxonomy
        ext: The external taxonomy
        service: The name of the external service, used in the `extern` tags
        sets: The local dataset store
        ext_sets: The dataset driver of the external service
        max_iterations: The number of passes used to resolve moves and rank changes
    """

    def __init__(
        self,
        db: DB,
        ext: Taxonomy,
        service: str,
        sets: DatasetDB | None = None,
        ext_sets: SetDB | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        if not service:
            raise DriverError("An external taxonomy should be defined")

        self.db = db
        self.ext = ext
        self.service = service
        self.sets = sets
        self.ext_sets = ext_sets
        self.max_iterations = max_iterations

        # Values of the external taxa already retrieved, by external ID
        self._remote: dict[str, ExternTaxon] = {}

    @classmethod
    def open(
        cls,
        registry: DriverRegistry,
        driver: str,
        data_dir: str = ".",
        max_iterations: int = MAX_ITERATIONS,
    ) -> "Synchronizer":
        """Open the local stores of a project and an external taxonomy.

        Args:
            registry: The registry used to open the external drivers
            driver: The driver string of the external taxonomy (e.g. `gbif`)
            data_dir: The project directory
            max_iterations: The number of passes used by a full synchronization

        Raises:
            DriverError: if the driver is empty or not registered.
        """

        service, param = parse_driver_string(driver)
        ext = registry.open_tax(service, param)
        db = DB.open(data_dir)

        sets = ext_sets = None
        if registry.has_set(service):
            ext_sets = registry.open_set(service, param)
            sets = DatasetDB.open(data_dir)

        return cls(
            db,
            ext,
            service,
            sets=sets,
            ext_sets=ext_sets,
            max_iterations=max_iterations,
        )

    def commit(self) -> None:
        """Write the changes of the dataset store and the taxonomy."""
        if self.sets is not None:
            self.sets.commit()
        self.db.commit()

    #
    # Access to the external taxonomy
    #

    def _tag(self, id: str) -> str:
        return f"{self.service}:{id}"

    def _local(self, id: str) -> Taxon | None:
        """Return the local taxon linked to an external ID."""
        if not id:
            return None
        return self.db.tax_ed(self._tag(id))

    def _extern_id(self, tax: Taxon | None) -> str:
        return get_extern_id(tax, self.service)

    def _taxon(self, name: str) -> Taxon:
        tax = self.db.tax_ed(name)
        if tax is None:
            raise TaxonomyError(f"Taxon '{name}' not in database")
        return tax

    def _remember(self, tx: TaxonRecord) -> None:
        self._remote[tx.id] = ExternTaxon(tx.parent, tx.rank, tx.correct)

    def _fetch(self, id: str) -> TaxonRecord | None:
        """Get an external taxon by ID, logging a warning if it is not available."""

        if not id:
            return None

        try:
            tx = self.ext.taxon_by_id(id)
        except GBIFError as excep:
            LOGGER.warning(f"When looking for {self._tag(id)}: {excep.message}")
            return None

        if tx is None:
            LOGGER.warning(f"When looking for {self._tag(id)}: not found")
            return None

        self._remember(tx)
        self._remote[id] = self._remote[tx.id]
        return tx

    def _remote_values(self, id: str) -> ExternTaxon | None:
        """Get the values of an external taxon, retrieving it only once."""
        if id not in self._remote and self._fetch(id) is None:
            return None
        return self._remote.get(id)

    def _query(self, query: Callable[[str], TaxScan], id: str) -> list[TaxonRecord]:
        try:
            return tax_list(query(id))
        except GBIFError as excep:
            LOGGER.warning(f"When reading {self._tag(id)}: {excep.message}")
            return []

    def _search(self, name: str) -> list[TaxonRecord] | None:
        """Search an external taxonomy by name, returning None on failure."""

        try:
            candidates = tax_list(self.ext.taxon_by_name(name))
        except GBIFError as excep:
            LOGGER.warning(f"When searching {name}: {excep.message}")
            return None

        if not candidates:
            LOGGER.warning(f"When searching {name}: not in {self.service}")
        return candidates

    def _log_ambiguous(self, name: str, candidates: list[TaxonRecord]) -> None:
        LOGGER.warning(f"Ambiguous name {name}: ", extra={"join": candidates})

    #
    # Changes to the local stores
    #

    def _add_dataset(self, tax: Taxon, id: str) -> None:
        """Set the source of a taxon from the ID of an external dataset.

        Raises:
            TaxonomyError, DatasetError: if the dataset or the taxon can not be set.
        """

        if not id:
            return

        if self.sets is None or self.ext_sets is None:
            tax.set(SOURCE, self._tag(id))
            return

        dset = self.sets.set_ed(self._tag(id))
        if dset is None:
            try:
                src = self.ext_sets.set_id(id)
            except GBIFError as excep:
                LOGGER.warning(f"When looking for dataset {self._tag(id)}: {excep}")
                return
            if src is None:
                return

            dset = self.sets.add(src.title)
            dset.set(EXTERN, self._tag(src.id))
            for key in src.keys():
                dset.set(key, src.value(key))

        tax.set(SOURCE, dset.id)

    def _copy_values(self, tax: Taxon, tx: TaxonRecord) -> None:
        """Copy the values of an external taxon, except its structural fields."""

        for key in tx.keys():
            if key == EXTERN:
                continue
            try:
                if key == SOURCE:
                    self._add_dataset(tax, tx.value(key))
                else:
                    tax.set(key, tx.value(key))
            except (TaxonomyError, DatasetError) as excep:
                LOGGER.warning(f"When updating {tax.name}: {excep.message}")

    def _link(self, tax: Taxon, tx: TaxonRecord) -> bool:
        """Tag a local taxon with the ID of an external taxon."""

        try:
            tax.set(EXTERN, self._tag(tx.id))
        except TaxonomyError as excep:
            LOGGER.warning(f"When matching {tax.name}: {excep.message}")
            return False

        self._remember(tx)
        return True

    def _add_extern(self, tx: TaxonRecord, parent: str) -> Taxon | None:
        """Add an external taxon to the local taxonomy, linked and with its values."""

        try:
            tax = self.db.add(tx.name, parent, tx.rank, tx.correct)
        except TaxonomyError as excep:
            LOGGER.warning(
                f"When adding {tx.name} [{self._tag(tx.id)}]: {excep.message}"
            )
            return None

        if not self._link(tax, tx):
            tax.delete()
            return None

        self._copy_values(tax, tx)
        LOGGER.debug(f"Added {tax.name} [{self._tag(tx.id)}]")
        return tax

    #
    # Add
    #

    @loggerinfo_push_pop("Adding names from the external taxonomy")
    def add_names(
        self, names: Iterable[str], rank: Rank = Rank.UNRANKED
    ) -> list[str]:
        """Add a list of names to the local taxonomy.

        Each name is searched in the external taxonomy. If there are several taxa
        with the same name, the first one with a parent already linked in the local
        taxonomy is used. Names that are already in the local taxonomy, or that do not
        start with a letter (so comment lines are ignored), are skipped.

        If a rank is given, the ancestors of the taxon down to that rank are also
        added, so that, for example, a species added with the rank `family` is added
        with its genus and family. Otherwise the taxon is added to its parent if the
        parent is already linked, or to the root.

        Args:
            names: The names to add
            rank: The most inclusive rank of the ancestors to add

        Returns:
            The names that could not be added.
        """

        not_added = []
        for name in names:
            name = tax_canon(name)
            if not _is_name(name) or name in self.db:
                continue

            tx = self._match_name(name)
            tax = None if tx is None else self._add_taxon(tx, rank)
            if tax is None:
                not_added.append(name)
                continue

            if tax.name != name:
                LOGGER.warning(f"Taxon {name} added as {tax.name}")

        return not_added

    def _match_name(self, name: str) -> TaxonRecord | None:
        candidates = self._search(name)
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]

        for tx in candidates:
            if self._local(tx.parent) is not None:
                return tx

        self._log_ambiguous(name, candidates)
        return None

    def _add_taxon(self, tx: TaxonRecord, rank: Rank) -> Taxon | None:
        tax = self._local(tx.id)
        if tax is not None:
            return tax

        # A synonym needs its senior name, and ranks below the requested rank need
        # their parents
        need_parent = not tx.correct or (
            rank != Rank.UNRANKED and (tx.rank > rank or tx.rank == Rank.UNRANKED)
        )

        parent = self._local(tx.parent)
        if parent is None and need_parent and tx.parent:
            ptx = self._fetch(tx.parent)
            if ptx is None:
                return None
            parent = self._add_taxon(ptx, rank)
            if parent is None:
                return None

        return self._add_extern(tx, "" if parent is None else parent.id)

    #
    # Fill
    #

    @loggerinfo_push_pop("Filling taxa from the external taxonomy")
    def fill(self, name: str = "") -> None:
        """Add the synonyms and the children of species from the external taxonomy.

        Every linked taxon receives the external synonyms that are not in the local
        taxonomy. Taxa at or below the species rank also receive their external
        children (e.g. subspecies). The descendants of a taxon are processed after
        the taxon, so the new taxa are also filled.

        Args:
            name: The taxon to fill, or an empty string to fill the whole taxonomy.

        Raises:
            TaxonomyError: if the taxon is not in the local taxonomy.
        """

        taxa = [self._taxon(name)] if name else self.db.tax_list("")
        for tax in taxa:
            self._fill_taxon(tax)

    def _fill_taxon(self, tax: Taxon) -> None:
        eid = self._extern_id(tax)
        if eid and tax.correct:
            if self.db.effective_rank(tax.id) >= Rank.SPECIES:
                self._fill_list(tax, self._query(self.ext.children, eid))
            self._fill_list(tax, self._query(self.ext.synonyms, eid))

        for child in self.db.tax_list(tax.id):
            self._fill_taxon(child)

    def _fill_list(self, tax: Taxon, taxa: list[TaxonRecord]) -> None:
        for tx in taxa:
            if not _is_name(tx.name) or self._local(tx.id) is not None:
                continue
            self._add_extern(tx, tax.id)

    @loggerinfo_push_pop("Adding parents from the external taxonomy")
    def fill_up(self, rank: Rank, name: str = "") -> None:
        """Add the external ancestors of the taxa, up to a given rank.

        Starting from a taxon, the chain of local parents is followed up to a root
        taxon, which is then moved to its external parent (which is added if needed)
        as long as the external parent is not above the requested rank. Without a
        taxon, all the root taxa are processed repeatedly, as a new parent can be the
        external parent of other root taxa, until no more taxa are moved.

        Args:
            rank: The most inclusive rank to add
            name: The taxon to process, or an empty string for the root taxa.

        Raises:
            TaxonomyError: if the taxon is not in the local taxonomy.
        """

        if name:
            tax: Taxon | None = self._taxon(name)
            while tax is not None:
                tax = self._fill_up(tax, rank)
            return

        moved = True
        while moved:
            moved = False
            for tax in self.db.tax_list(""):
                if self._fill_up(tax, rank) is not None:
                    moved = True

    def _fill_up(self, tax: Taxon, rank: Rank) -> Taxon | None:
        """Return the next taxon in the climb, or None when it is done."""

        if self.db.effective_rank(tax.id) <= rank:
            return None
        if tax.parent:
            return self.db.taxon_by_id(tax.parent)

        pid = self._extern_parent_id(self._extern_id(tax), rank)
        if not pid:
            return None

        parent = self._local(pid)
        if parent is None:
            ptx = self._fetch(pid)
            if ptx is None:
                return None
            if ptx.rank != Rank.UNRANKED and ptx.rank < rank:
                return None
            parent = self._add_extern(ptx, "")
            if parent is None:
                return None

        try:
            self.db.graft(tax.id, parent.id)
        except TaxonomyError as excep:
            LOGGER.warning(f"When moving {tax.name}: {excep.message}")
            return None

        return parent

    def _extern_parent_id(self, id: str, rank: Rank) -> str:
        """Return the external parent of a taxon, if the taxon is below a rank."""

        if not id:
            return ""
        et = self._remote_values(id)
        if et is None:
            return ""
        if et.rank != Rank.UNRANKED and et.rank <= rank:
            return ""
        return et.parent

    #
    # Update
    #

    @loggerinfo_push_pop("Updating taxa from the external taxonomy")
    def update(self, name: str = "", match_only: bool = False) -> None:
        """Link the local taxa to the external taxonomy and update their values.

        Linked taxa are read by their external ID. Other taxa are searched by name
        and, if found, linked to the external taxon. If the name is ambiguous, the
        taxon whose parent is the external parent of the local parent is used, or
        else the taxon that is the external parent of the local children. The
        children are processed before the latter check is made.

        The values of the external taxon (author, reference, source...) replace the
        local values, but the name, rank, parent and status of the local taxon are
        never changed.

        Args:
            name: The taxon to update, or an empty string to update all taxa.
            match_only: Only link the taxa that are not linked, without updating
                their values.

        Raises:
            TaxonomyError: if the taxon is not in the local taxonomy.
        """

        taxa = [self._taxon(name)] if name else self.db.tax_list("")
        for tax in taxa:
            self._update(tax, match_only)

    def _update(self, tax: Taxon, match_only: bool) -> None:
        eid = self._extern_id(tax)
        tx = None
        candidates: list[TaxonRecord] = []

        if eid:
            if not match_only:
                tx = self._fetch(eid)
        else:
            candidates = self._search(tax.name) or []
            tx = self._match_parent(tax, candidates)
            if tx is not None and not self._link(tax, tx):
                tx = None
                candidates = []

        for child in self.db.tax_list(tax.id):
            self._update(child, match_only)

        if tx is None and len(candidates) > 1:
            tx = self._match_children(tax, candidates)
            if tx is None:
                self._log_ambiguous(tax.name, candidates)
            elif not self._link(tax, tx):
                tx = None

        if tx is not None and not match_only:
            self._copy_values(tax, tx)

    def _match_parent(
        self, tax: Taxon, candidates: list[TaxonRecord]
    ) -> TaxonRecord | None:
        if len(candidates) == 1:
            return candidates[0]

        pid = self._extern_id(self.db.taxon_by_id(tax.parent)) if tax.parent else ""
        if not pid:
            return None

        matches = [tx for tx in candidates if tx.parent == pid]
        return matches[0] if len(matches) == 1 else None

    def _match_children(
        self, tax: Taxon, candidates: list[TaxonRecord]
    ) -> TaxonRecord | None:
        # The external ancestors of the linked children, as far as they are known
        ancestors = set()
        for child in self.db.tax_list(tax.id):
            et = self._remote_values(self._extern_id(child))
            while et is not None and et.parent and et.parent not in ancestors:
                ancestors.add(et.parent)
                et = self._remote.get(et.parent)

        matches = [tx for tx in candidates if tx.id in ancestors]
        return matches[0] if len(matches) == 1 else None

    #
    # Full synchronization
    #

    @loggerinfo_push_pop("Synchronizing with the external taxonomy")
    def sync(self, name: str = "") -> SyncReport:
        """Reconcile the rank, status and parent of the linked taxa.

        Every linked taxon is compared with its external taxon. Taxa with a different
        rank are left unranked, so they can be moved freely, and are marked to be
        moved and ranked. Taxa with a different status, or whose external parent is a
        different local taxon, are marked to be moved.

        The marked taxa are then moved, as a synonym of the local senior name (which
        is added if needed) or as a child of the linked external parent, and finally
        set to their external rank. Both steps are repeated for a limited number of
        passes, as one change can enable another.

        Args:
            name: The taxon to synchronize, with its descendants, or an empty string
                to synchronize the whole taxonomy.

        Raises:
            TaxonomyError: if the taxon is not in the local taxonomy.

        Returns:
            A report of the taxa that could not be reconciled.
        """

        taxa = [self._taxon(name)] if name else self.db.tax_list("")

        # Fresh values are always read from the external taxonomy
        self._remote = {}
        to_move: dict[str, None] = {}
        to_rank: dict[str, None] = {}
        for tax in taxa:
            self._discover(tax, to_move, to_rank)

        report = SyncReport()
        self._make_moves(to_move, report)
        self._make_rank_updates(to_rank, report)

        if report.ok:
            LOGGER.info(
                f"{len(report.moved)} taxa moved, {len(report.ranked)} taxa ranked"
            )
        return report

    def _discover(
        self, tax: Taxon, to_move: dict[str, None], to_rank: dict[str, None]
    ) -> None:
        et = self._remote_values(self._extern_id(tax))
        if et is not None:
            if et.rank != tax.rank:
                to_move[tax.name] = None
                to_rank[tax.name] = None
                # An unranked taxon can be moved anywhere
                tax.set_rank(Rank.UNRANKED)
            if et.correct != tax.correct:
                to_move[tax.name] = None
            parent = self._local(et.parent)
            if parent is not None and parent.id != tax.parent:
                to_move[tax.name] = None

        for child in self.db.tax_list(tax.id):
            self._discover(child, to_move, to_rank)

    def _make_moves(self, to_move: dict[str, None], report: SyncReport) -> None:
        pending = list(to_move)
        for _ in range(self.max_iterations):
            if not pending:
                break
            pending = [nm for nm in pending if not self._move(nm, report)]

        if pending:
            LOGGER.error(f"{len(pending)} taxa not moved: ", extra={"join": pending})
        report.unmoved = pending

    def _move(self, name: str, report: SyncReport) -> bool:
        """Move a taxon to its external parent.

        Returns:
            False if the move should be tried again.
        """

        tax = self.db.taxon_by_id(name)
        et = None if tax is None else self._remote_values(self._extern_id(tax))
        if tax is None or et is None:
            return True

        if not et.correct:
            parent = self._senior(et.parent)
        elif et.parent:
            parent = self._local(et.parent)
        else:
            # An external root taxon keeps its local parent
            parent = self.db.taxon_by_id(tax.parent) if tax.parent else None
            if parent is None:
                return True

        if parent is None:
            return False

        if not parent.correct:
            LOGGER.error(f"{tax.name}: target parent {parent.name} is a synonym")
            report.failed.append(tax.name)
            return True

        if parent.id == tax.parent and et.correct == tax.correct:
            return True

        try:
            tax.move(parent.id, et.correct)
        except TaxonomyError as excep:
            LOGGER.debug(excep.message)
            return False

        report.moved.append(tax.name)
        return True

    def _senior(self, id: str) -> Taxon | None:
        """Return the local senior name of a synonym, adding it if needed."""

        parent = self._local(id)
        if parent is not None:
            return parent

        tx = self._fetch(id)
        if tx is None:
            return None

        parent = self._local(tx.id)
        if parent is not None:
            return parent

        if tx.name in self.db:
            other = self.db.taxon_by_id(tx.name)
            LOGGER.warning(
                f"Ambiguous parent {tx.name} [{self._tag(tx.id)}], "
                f"in local taxonomy as [{self._tag(self._extern_id(other))}]"
            )
            return None

        # The new senior name goes under its nearest linked external ancestor
        anc_id = tx.parent
        ancestor = None
        while anc_id and ancestor is None:
            ancestor = self._local(anc_id)
            et = self._remote_values(anc_id) if ancestor is None else None
            anc_id = "" if et is None else et.parent

        return self._add_extern(tx, "" if ancestor is None else ancestor.id)

    def _make_rank_updates(
        self, to_rank: dict[str, None], report: SyncReport
    ) -> None:
        pending = list(to_rank)
        for _ in range(self.max_iterations):
            if not pending:
                break
            pending = [nm for nm in pending if not self._update_rank(nm, report)]

        if pending:
            LOGGER.error(
                f"{len(pending)} taxa left unranked: ", extra={"join": pending}
            )
        report.unranked = pending

    def _update_rank(self, name: str, report: SyncReport) -> bool:
        tax = self.db.taxon_by_id(name)
        et = None if tax is None else self._remote_values(self._extern_id(tax))
        if tax is None or et is None:
            return True

        try:
            tax.set_rank(et.rank)
        except TaxonomyError as excep:
            LOGGER.debug(excep.message)
            return False

        report.ranked.append(tax.name)
        return True
