"""This module implements the local store of dataset metadata.

Taxa and records often cite the dataset they were taken from (the `source` field of a
taxon). The datasets are kept in a simple keyed store, saved as a stanza file in
`datasets/datasets.stz` inside the project directory, where each dataset is identified
by its title.

As with taxa, datasets can be linked to external services through the `extern` field
and a dataset can be searched by a `service:id` tag. This is used when importing taxa
from an external taxonomy: the source dataset of an imported taxon is looked up in the
local store by its external ID and, if missing, created from the metadata provided by
the external service.

The [SetDB][biodv.dataset.SetDB] abstract class describes a source of dataset
metadata and is implemented by the local store and by the external dataset drivers.
"""  # noqa D415

import abc
import os
from collections.abc import Iterator
from pathlib import Path
from typing import TextIO

from biodv.logger import LOGGER, log_and_raise
from biodv.stanza import StanzaError, StanzaWriter, read_records
from biodv.taxon import EXTERN, normalize_key, split_tag, update_extern

DATASET_DIR = "datasets"
DATASET_FILE = "datasets.stz"

# Common keys used for a dataset
TITLE = "title"
ABOUT = "about"
REFERENCE = "reference"
LICENSE = "license"
URL = "url"
PUBLISHER = "publisher"


class DatasetError(Exception):
    """Exception class for invalid dataset operations.

    Attributes:
        message: explanation of the error
    """

    def __init__(self, message="Invalid dataset operation"):
        self.message = message
        super().__init__(self.message)


def title_canon(title: str) -> str:
    """Normalize a dataset title, collapsing runs of whitespace."""
    return " ".join(title.split())


class DatasetRecord(abc.ABC):
    """Abstract base class for the metadata of a dataset."""

    @property
    @abc.abstractmethod
    def title(self) -> str:
        """The title of the dataset."""

    @property
    @abc.abstractmethod
    def id(self) -> str:
        """The ID of the dataset in its store."""

    @abc.abstractmethod
    def keys(self) -> list[str]:
        """The sorted list of fields with a value in the dataset."""

    @abc.abstractmethod
    def value(self, key: str) -> str:
        """The value of a field, or an empty string if it is not set."""

    def __repr__(self) -> str:
        return f"{self.title} [{self.id}]"


class SetDB(abc.ABC):
    """Abstract base class for a source of dataset metadata."""

    @abc.abstractmethod
    def set_id(self, id: str) -> DatasetRecord | None:
        """Return the dataset with a given ID, or None if it is not found."""


class Dataset(DatasetRecord):
    """A handle onto a dataset stored in a DatasetDB.

    Args:
        db: The store of the dataset
        title: The title of the dataset
    """

    def __init__(self, db: "DatasetDB", title: str) -> None:
        self.db = db
        self._title = title

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Dataset):
            return NotImplemented
        return self.db is other.db and self._title == other._title

    def __hash__(self) -> int:
        return hash((id(self.db), self._title))

    @property
    def title(self) -> str:
        return self._title

    @property
    def id(self) -> str:
        return self._title

    def keys(self) -> list[str]:
        data = self.db._get(self._title)
        return sorted(k for k, v in data.items() if k != TITLE and v)

    def value(self, key: str) -> str:
        return self.db._get(self._title).get(normalize_key(key), "")

    def set(self, key: str, value: str) -> None:
        """Set a field value, see DatasetDB.set_value."""
        self.db.set_value(self._title, key, value)


class DatasetDB(SetDB):
    """The local store of dataset metadata.

    Args:
        path: The project directory used to store the datasets. A store without a path
            is kept in memory and can not be committed.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = None if path is None else Path(path)
        self.changed = False
        self._sets: dict[str, dict[str, str]] = {}
        self._extern: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sets)

    @property
    def file_path(self) -> Path | None:
        """The path of the stanza file holding the datasets."""
        if self.path is None:
            return None
        return self.path / DATASET_DIR / DATASET_FILE

    @classmethod
    def open(cls, path: str | Path = ".") -> "DatasetDB":
        """Open the dataset store of a project directory.

        Raises:
            DatasetError: if the file is not a valid dataset file.
        """

        db = cls(path)
        file_path = db.file_path
        if file_path is not None and file_path.exists():
            LOGGER.debug(f"Reading datasets from {file_path}")
            with open(file_path, encoding="utf-8") as stream:
                db.load(stream)
        return db

    def load(self, stream: TextIO) -> None:
        """Load datasets from a stanza stream, without marking the store as changed."""

        changed = self.changed
        try:
            for data in read_records(stream):
                dset = self.add(data.get(TITLE, ""))
                for key, val in data.items():
                    if key == TITLE:
                        continue
                    for token in val.split() if key == EXTERN else [val]:
                        self.set_value(dset.title, key, token)
        except (StanzaError, DatasetError) as excep:
            log_and_raise(f"Bad dataset file: {excep}", DatasetError)

        self.changed = changed

    def commit(self) -> None:
        """Write the datasets to the project directory, if the store has changed."""

        if not self.changed:
            return

        file_path = self.file_path
        if file_path is None:
            raise DatasetError("Cannot commit a dataset store without a path")

        os.makedirs(file_path.parent, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as stream:
            self.write(stream)

        self.changed = False

    def write(self, stream: TextIO) -> None:
        """Write all datasets as stanza records, sorted by title."""
        writer = StanzaWriter(stream, fields=[TITLE])
        for title in sorted(self._sets):
            writer.write(self._sets[title])

    def _get(self, title: str) -> dict[str, str]:
        try:
            return self._sets[title]
        except KeyError:
            raise DatasetError(f"Dataset '{title}' not in database")

    def datasets(self) -> Iterator[Dataset]:
        """Iterate over the datasets in the store, sorted by title."""
        for title in sorted(self._sets):
            yield Dataset(self, title)

    def add(self, title: str) -> Dataset:
        """Add a new dataset.

        Raises:
            DatasetError: if the title is empty or already in use.
        """

        title = title_canon(title)
        if not title:
            raise DatasetError("Empty dataset title")
        if title in self._sets:
            raise DatasetError(f"Dataset '{title}' already in database")

        self._sets[title] = {TITLE: title}
        self.changed = True
        return Dataset(self, title)

    def set_id(self, id: str) -> Dataset | None:
        return self.set_ed(id)

    def set_ed(self, id: str) -> Dataset | None:
        """Return a dataset by its title, or by an extern `service:id` tag."""

        id = id.strip()
        if not id:
            return None

        if ":" in id:
            service, ext_id = split_tag(id)
            title = self._extern.get(f"{service}:{ext_id}")
            if title is not None:
                return Dataset(self, title)

        title = title_canon(id)
        return Dataset(self, title) if title in self._sets else None

    def set_value(self, title: str, key: str, value: str) -> None:
        """Set the value of a field of a dataset.

        The title can not be changed. An empty value removes the field. For the
        `extern` field, a `service:id` value sets the ID for that service and a
        `service:` value removes it.

        Raises:
            DatasetError: if the dataset is not found, the key is empty or is the
                title, or the extern value is not valid.
        """

        data = self._get(title_canon(title))
        key = normalize_key(key)
        value = value.strip()

        if not key or key == TITLE:
            raise DatasetError(f"{title}: key '{key}' can not be set")

        if key == EXTERN:
            if not value:
                return
            current = data.get(EXTERN, "")
            try:
                new = update_extern(
                    current,
                    value,
                    in_use=lambda tk: self._extern.get(tk, data[TITLE]) != data[TITLE],
                )
            except ValueError as excep:
                raise DatasetError(f"{title}: {excep}")
            for token in current.split():
                self._extern.pop(token, None)
            for token in new.split():
                self._extern[token] = data[TITLE]
            value = new

        if data.get(key, "") == value:
            return

        if value:
            data[key] = value
        else:
            data.pop(key, None)
        self.changed = True
