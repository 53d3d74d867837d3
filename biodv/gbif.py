"""This module provides drivers for the taxonomy and dataset web services of GBIF.

The [GBIFTaxonomy][biodv.gbif.GBIFTaxonomy] class implements the
[Taxonomy][biodv.taxon.Taxonomy] interface over the GBIF species API, using only the
taxa in the GBIF backbone taxonomy: a name usage is used only if its key is the
backbone (nub) key. Optionally, usages without a backbone key (`nubKey` of zero) are
also accepted, which is requested with the `nub-0` driver parameter.

The [GBIFDatasets][biodv.gbif.GBIFDatasets] class provides the metadata of the GBIF
datasets that are the source of taxonomic data.

Both drivers share a [GBIFClient][biodv.gbif.GBIFClient], which sends the requests to
the API. Each request is tried a fixed number of times before giving up, and requests
are spaced by a short wait, to be polite with the service. A missing resource (an
HTTP 404 answer) is not an error and is returned as None.
"""  # noqa D415

import dataclasses
import time
from collections.abc import Iterator

import requests
import simplejson
from simplejson.errors import JSONDecodeError

from biodv.dataset import (
    ABOUT,
    LICENSE,
    PUBLISHER,
    REFERENCE,
    URL,
    DatasetRecord,
    SetDB,
)
from biodv.logger import LOGGER
from biodv.resources import Resources
from biodv.taxon import (
    AUTHOR,
    REFERENCE as TAX_REFERENCE,
    SOURCE,
    Rank,
    TaxonRecord,
    Taxonomy,
    TaxScan,
    normalize_key,
)

API = "https://api.gbif.org/v1/"
RETRY = 5
TIMEOUT = 20.0
WAIT = 0.3
PAGE_LIMIT = 300

NUB0 = "nub-0"
"""str: Driver parameter used to accept taxa outside the GBIF backbone."""

# The GBIF kingdoms are the root of the backbone taxonomy
KINGDOMS = ["1", "2", "3", "4", "5", "6", "7", "8"]

LICENSES = {
    "http://creativecommons.org/publicdomain/zero/1.0/legalcode": "CC0-1.0",
    "http://creativecommons.org/licenses/by/4.0/legalcode": "CC BY 4.0",
    "http://creativecommons.org/licenses/by-nc/4.0/legalcode": "CC BY-NC 4.0",
}


class GBIFError(Exception):
    """Exception class for GBIF errors.

    Attributes:
        message: explanation of the error
    """

    def __init__(self, message="No answer from the GBIF API"):
        self.message = message
        super().__init__(self.message)


def taxon_url(id: str) -> str:
    """Return the GBIF web page of a taxon."""
    id = id.strip()
    return f"https://www.gbif.org/species/{id}" if id else ""


def dataset_url(id: str) -> str:
    """Return the GBIF web page of a dataset."""
    id = id.strip()
    return f"https://www.gbif.org/dataset/{id}" if id else ""


class GBIFClient:
    """A client for the GBIF API.

    Args:
        api: The root URL of the API
        retry: The number of attempts for each request
        timeout: The timeout of each request, in seconds
        wait: The minimum time between requests, in seconds
    """

    def __init__(
        self,
        api: str = API,
        retry: int = RETRY,
        timeout: float = TIMEOUT,
        wait: float = WAIT,
    ) -> None:
        self.api = api if api.endswith("/") else api + "/"
        self.retry = max(1, retry)
        self.timeout = timeout
        self.wait = wait
        self._last = 0.0

    @classmethod
    def from_resources(cls, resources: Resources) -> "GBIFClient":
        """Create a client using the GBIF settings of a configuration."""
        return cls(
            api=resources.gbif.api,
            retry=resources.gbif.retry,
            timeout=resources.gbif.timeout,
            wait=resources.gbif.wait,
        )

    def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last
        if elapsed < self.wait:
            time.sleep(self.wait - elapsed)
        self._last = time.monotonic()

    def get(self, path: str, params: dict | None = None) -> dict | None:
        """Request a resource from the API.

        Args:
            path: The resource path, relative to the API root
            params: Any query parameters

        Raises:
            GBIFError: if no valid answer is received after all attempts.

        Returns:
            The decoded JSON answer, or None if the resource was not found.
        """

        url = self.api + path
        error: str = ""

        for attempt in range(self.retry):
            self._throttle()
            try:
                resp = requests.get(url, params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as excep:
                error = str(excep)
                LOGGER.debug(f"Request {url} failed (attempt {attempt + 1}): {error}")
                continue

            if resp.status_code == 404:
                return None

            if resp.status_code != 200:
                error = f"HTTP status {resp.status_code}"
                LOGGER.debug(f"Request {url} failed (attempt {attempt + 1}): {error}")
                continue

            try:
                return simplejson.loads(resp.text)
            except JSONDecodeError as excep:
                error = f"invalid JSON answer: {excep}"
                continue

        raise GBIFError(f"No answer from {url} after {self.retry} attempts: {error}")


@dataclasses.dataclass(repr=False)
class GBIFTaxon(TaxonRecord):
    """A name usage from the GBIF species API.

    The fields of the dataclass store the values of the API answer. The
    [TaxonRecord][biodv.taxon.TaxonRecord] interface is then provided from these
    values: the parent of a synonym is its accepted name, and the author, reference
    and source of the taxon are given by the authorship, the publication and the key of
    the constituent dataset.

    Args:
        key: The key of the name usage
        nub_key: The key of the usage in the backbone
        accepted_key: The key of the accepted name, for synonyms
        canonical_name: The name without authorship
        scientific_name: The full scientific name, used if there is no canonical name
        authorship: The author string
        rank_str: The GBIF rank
        synonym: Whether the name is a synonym
        constituent_key: The key of the source dataset
        parent_key: The key of the parent taxon
        published_in: The reference of the original publication
    """

    key: int
    nub_key: int = 0
    accepted_key: int = 0
    canonical_name: str = ""
    scientific_name: str = ""
    authorship: str = ""
    rank_str: str = ""
    synonym: bool = False
    constituent_key: str = ""
    parent_key: int = 0
    published_in: str = ""

    @classmethod
    def from_json(cls, data: dict) -> "GBIFTaxon":
        """Create a taxon from a species API answer."""

        return cls(
            key=int(data.get("key") or 0),
            nub_key=int(data.get("nubKey") or 0),
            accepted_key=int(data.get("acceptedKey") or 0),
            canonical_name=data.get("canonicalName") or "",
            scientific_name=data.get("scientificName") or "",
            authorship=(data.get("authorship") or "").strip(),
            rank_str=data.get("rank") or "",
            synonym=bool(data.get("synonym", False)),
            constituent_key=data.get("constituentKey") or "",
            parent_key=int(data.get("parentKey") or 0),
            published_in=data.get("publishedIn") or "",
        )

    def in_backbone(self, accept_nub0: bool = False) -> bool:
        """Is the name usage the backbone usage of the name?"""
        nub = self.nub_key
        if nub == 0 and accept_nub0:
            nub = self.key
        return self.key == nub

    @property
    def name(self) -> str:
        return self.canonical_name or self.scientific_name

    @property
    def id(self) -> str:
        return str(self.nub_key or self.key)

    @property
    def parent(self) -> str:
        if self.synonym:
            return str(self.accepted_key) if self.accepted_key else ""
        return str(self.parent_key) if self.parent_key else ""

    @property
    def rank(self) -> Rank:
        return Rank.parse(self.rank_str)

    @property
    def correct(self) -> bool:
        return not self.synonym

    def keys(self) -> list[str]:
        return [k for k in (AUTHOR, TAX_REFERENCE, SOURCE) if self.value(k)]

    def value(self, key: str) -> str:
        key = normalize_key(key)
        if key == AUTHOR:
            return self.authorship
        if key == TAX_REFERENCE:
            return self.published_in
        if key == SOURCE:
            return self.constituent_key
        return ""


class GBIFTaxonomy(Taxonomy):
    """The GBIF backbone taxonomy.

    Args:
        client: The client used to access the API
        accept_nub0: Accept name usages without a backbone key
        page_limit: The number of results requested on each page of a list
    """

    def __init__(
        self,
        client: GBIFClient | None = None,
        accept_nub0: bool = False,
        page_limit: int = PAGE_LIMIT,
    ) -> None:
        self.client = client or GBIFClient()
        self.accept_nub0 = accept_nub0
        self.page_limit = page_limit

    @classmethod
    def from_resources(cls, resources: Resources, param: str = "") -> "GBIFTaxonomy":
        """Open the taxonomy using the GBIF settings of a configuration.

        Args:
            resources: The package configuration
            param: The driver parameter: use `nub-0` to accept taxa outside the
                backbone.
        """
        return cls(
            client=GBIFClient.from_resources(resources),
            accept_nub0=resources.gbif.accept_nub0 or param.strip() == NUB0,
            page_limit=resources.gbif.page_limit,
        )

    def _pages(self, path: str, params: dict) -> Iterator[dict]:
        """Yield the results of a paged list request."""

        offset = 0
        while True:
            page = dict(params, limit=self.page_limit)
            if offset:
                page["offset"] = offset

            answer = self.client.get(path, page)
            if answer is None:
                return

            yield from answer.get("results", [])

            if answer.get("endOfRecords", True):
                return
            offset += answer.get("limit") or self.page_limit

    def _taxa(self, path: str, params: dict) -> Iterator[GBIFTaxon]:
        for data in self._pages(path, params):
            taxon = GBIFTaxon.from_json(data)
            if taxon.in_backbone(self.accept_nub0):
                yield taxon

    def _kingdoms(self) -> Iterator[GBIFTaxon]:
        for id in KINGDOMS:
            taxon = self.taxon_by_id(id)
            if taxon is not None:
                yield taxon

    def taxon_by_name(self, name: str) -> TaxScan:
        name = " ".join(name.split())
        if not name:
            raise ValueError("Empty taxon name")
        return TaxScan(self._taxa("species", {"name": name}))

    def taxon_by_id(self, id: str) -> GBIFTaxon | None:
        id = id.strip()
        if not id:
            raise ValueError("Empty taxon ID")

        data = self.client.get(f"species/{id}")
        if data is None:
            return None
        return GBIFTaxon.from_json(data)

    def children(self, id: str) -> TaxScan:
        id = id.strip()
        if not id or id == "0":
            return TaxScan(self._kingdoms())
        return TaxScan(self._taxa(f"species/{id}/children", {}))

    def synonyms(self, id: str) -> TaxScan:
        id = id.strip()
        if not id or id == "0":
            raise ValueError("Invalid taxon ID for synonyms")
        return TaxScan(self._taxa(f"species/{id}/synonyms", {}))


class GBIFDataset(DatasetRecord):
    """A dataset from the GBIF dataset API.

    Args:
        data: The decoded answer of the dataset API.
    """

    def __init__(self, data: dict) -> None:
        self.data = data

    @property
    def title(self) -> str:
        return self.data.get("title") or ""

    @property
    def id(self) -> str:
        return self.data.get("key") or ""

    def _best_contact(self) -> dict:
        """Return the originator of the dataset or, if missing, its metadata author."""

        best: dict = {}
        for contact in self.data.get("contacts") or []:
            if contact.get("type") == "ORIGINATOR":
                best = contact
            elif contact.get("type") == "METADATA_AUTHOR" and not best.get("type"):
                best = contact
        return best

    def keys(self) -> list[str]:
        return [k for k in (ABOUT, REFERENCE, LICENSE, URL, PUBLISHER) if self.value(k)]

    def value(self, key: str) -> str:
        key = normalize_key(key)

        if key == ABOUT:
            return self.data.get("description") or ""
        if key == REFERENCE:
            return (self.data.get("citation") or {}).get("text") or ""
        if key == LICENSE:
            return LICENSES.get(self.data.get("license") or "", "unknown")
        if key == URL:
            if self.data.get("homepage"):
                return self.data["homepage"]
            homepage = self._best_contact().get("homepage") or []
            if homepage:
                return homepage[0]
            return dataset_url(self.id)
        if key == PUBLISHER:
            return self._best_contact().get("organization") or ""
        return ""


class GBIFDatasets(SetDB):
    """The GBIF datasets.

    Args:
        client: The client used to access the API
    """

    def __init__(self, client: GBIFClient | None = None) -> None:
        self.client = client or GBIFClient()

    @classmethod
    def from_resources(cls, resources: Resources, param: str = "") -> "GBIFDatasets":
        """Open the dataset driver using the GBIF settings of a configuration."""
        return cls(client=GBIFClient.from_resources(resources))

    def set_id(self, id: str) -> GBIFDataset | None:
        id = id.strip()
        if not id:
            raise ValueError("Empty dataset ID")

        data = self.client.get(f"dataset/{id}")
        if data is None:
            return None
        return GBIFDataset(data)
