"""This module reads and writes the stanza format used by the local data stores.

A stanza file is a plain text list of records. Each record is a set of `field: value`
lines and records are terminated by a line starting with `%`:

```
# Comment lines start with a hash
name:	Homo sapiens
parent:	Homo
rank:	species
author:	Linnaeus, 1758
comment: A long value can continue over several lines
	as long as the following lines start with a space
	or a tab.
%%
```

Field names are not case sensitive and are stored in lower case, with internal
spaces replaced by a dash. Within a value, runs of spaces are collapsed to a single
space and the lines of a multi-line value are joined with a newline character. A
field with an empty value is ignored and a field that is repeated within a record is
an error.

The [read_records][biodv.stanza.read_records] generator provides the records in a
stream as dictionaries, and the [StanzaWriter][biodv.stanza.StanzaWriter] class writes
dictionaries as records.
"""  # noqa D415

from collections.abc import Iterator
from typing import TextIO


class StanzaError(Exception):
    """Exception class for badly formatted stanza files.

    Attributes:
        message: explanation of the error
        line: the line number in the stream where the problem was found
    """

    def __init__(self, message="Badly formatted stanza record", line: int = 0):
        self.message = message
        self.line = line
        super().__init__(f"line {line}: {message}" if line else message)


def field_name(value: str) -> str:
    """Convert a string into a valid field name."""
    return "-".join(value.lower().split())


def read_records(stream: TextIO) -> Iterator[dict[str, str]]:
    """Read the records in a stanza stream.

    Args:
        stream: A text stream with stanza formatted records.

    Raises:
        StanzaError: if a field is repeated within a record.

    Yields:
        A dictionary of field values for each non-empty record in the stream.
    """

    record: dict[str, str] = {}
    field = ""
    value: list[str] = []
    field_line = 0

    def _store() -> None:
        # Adds the field being read to the current record
        if not field or not value:
            return
        if field in record:
            raise StanzaError(f"duplicated field '{field}'", line=field_line)
        record[field] = "\n".join(value)

    for lineno, line in enumerate(stream, start=1):
        line = line.rstrip("\r\n")

        if not line.strip():
            continue

        # Continuation of a multi-line value
        if line[0].isspace():
            if field:
                value.append(" ".join(line.split()))
            continue

        if line.startswith("#"):
            continue

        _store()
        field, value = "", []

        if line.startswith("%"):
            if record:
                yield record
            record = {}
            continue

        # Lines without a field delimiter are ignored
        name, sep, text = line.partition(":")
        if not sep:
            continue

        field = field_name(name)
        field_line = lineno
        text = " ".join(text.split())
        if text:
            value.append(text)

    _store()
    if record:
        yield record


class StanzaWriter:
    """Write records in stanza format.

    The fields given in the ``fields`` argument are written first, in the given
    order, and any other field in a record is then written in alphabetical order.
    Fields with empty values are skipped unless ``force_empty`` is set.

    Args:
        stream: The output text stream
        fields: A list of the fields to write first
        force_empty: Write fields with empty values

    Raises:
        ValueError: if a field in ``fields`` is not a valid field name.
    """

    def __init__(
        self, stream: TextIO, fields: list[str] | None = None, force_empty: bool = False
    ) -> None:
        self.stream = stream
        self.force_empty = force_empty
        self.fields: list[str] = []

        for fld in fields or []:
            if field_name(fld) != fld or not fld:
                raise ValueError(f"Invalid field name: {fld}")
            if fld not in self.fields:
                self.fields.append(fld)

    def write(self, record: dict[str, str]) -> None:
        """Write a record.

        Args:
            record: A dictionary of field values.
        """

        data = {field_name(k): v for k, v in record.items() if field_name(k)}
        order = self.fields + sorted(k for k in data if k not in self.fields)

        count = 0
        for fld in order:
            count += self._write_field(fld, data.get(fld, ""))

        if count:
            self.stream.write("%%\n")

    def _write_field(self, fld: str, value: str) -> int:
        value = value.strip().replace("\r", "")
        if not value:
            if not self.force_empty:
                return 0
            self.stream.write(f"{fld}:\n")
            return 1

        sep = ":\t" if len(fld) < 6 else ": "
        self.stream.write(fld + sep + value.replace("\n", "\n\t") + "\n")
        return 1
