"""This module provides the registry of the drivers used to open taxonomies and
dataset stores.

Commands that work with an external service (for example, the GBIF backbone) identify
the service by a driver string of the form `<driver>[:<param>]`, such as `gbif` or
`gbif:nub-0`. The [DriverRegistry][biodv.drivers.DriverRegistry] maps driver names to
the functions used to open them. A registry is created explicitly and passed to the
code that needs to open a driver: the
[default_registry][biodv.drivers.default_registry] function returns a registry with
the drivers provided by the package.
"""  # noqa D415

import dataclasses
from collections.abc import Callable

from biodv.dataset import DatasetDB, SetDB
from biodv.gbif import GBIFDatasets, GBIFTaxonomy, dataset_url, taxon_url
from biodv.resources import Resources
from biodv.taxon import Taxonomy, split_tag
from biodv.taxonomy import DB


class DriverError(Exception):
    """Exception class for driver errors.

    Attributes:
        message: explanation of the error
    """

    def __init__(self, message="Unknown driver"):
        self.message = message
        super().__init__(self.message)


@dataclasses.dataclass
class TaxDriver:
    """A taxonomy driver.

    Args:
        open: A function that opens the taxonomy, given the driver parameter
        url: An optional function returning the web page of a taxon ID
        about: An optional function returning a short description of the driver
    """

    open: Callable[[str], Taxonomy]
    url: Callable[[str], str] | None = None
    about: Callable[[], str] | None = None


@dataclasses.dataclass
class SetDriver:
    """A dataset driver.

    Args:
        open: A function that opens the dataset store, given the driver parameter
        url: An optional function returning the web page of a dataset ID
        about: An optional function returning a short description of the driver
    """

    open: Callable[[str], SetDB]
    url: Callable[[str], str] | None = None
    about: Callable[[], str] | None = None


def parse_driver_string(value: str) -> tuple[str, str]:
    """Split a driver string of the form `<driver>:<param>`.

    Examples:
        >>> parse_driver_string("gbif:nub-0")
        ('gbif', 'nub-0')
        >>> parse_driver_string("gbif")
        ('gbif', '')
    """
    return split_tag(value)


class DriverRegistry:
    """A registry of taxonomy and dataset drivers."""

    def __init__(self) -> None:
        self._tax: dict[str, TaxDriver] = {}
        self._sets: dict[str, SetDriver] = {}

    def register_tax(self, name: str, driver: TaxDriver) -> None:
        """Add a taxonomy driver to the registry.

        Raises:
            DriverError: if the driver name is empty or already registered.
        """
        if not name:
            raise DriverError("Empty taxonomy driver name")
        if name in self._tax:
            raise DriverError(f"Taxonomy driver already registered: {name}")
        self._tax[name] = driver

    def register_set(self, name: str, driver: SetDriver) -> None:
        """Add a dataset driver to the registry.

        Raises:
            DriverError: if the driver name is empty or already registered.
        """
        if not name:
            raise DriverError("Empty dataset driver name")
        if name in self._sets:
            raise DriverError(f"Dataset driver already registered: {name}")
        self._sets[name] = driver

    def tax_drivers(self) -> list[str]:
        """Return the sorted names of the taxonomy drivers."""
        return sorted(self._tax)

    def set_drivers(self) -> list[str]:
        """Return the sorted names of the dataset drivers."""
        return sorted(self._sets)

    def _tax_driver(self, name: str) -> TaxDriver:
        if not name:
            raise DriverError("Empty taxonomy driver")
        try:
            return self._tax[name]
        except KeyError:
            raise DriverError(f"Unknown taxonomy driver: {name}")

    def _set_driver(self, name: str) -> SetDriver:
        if not name:
            raise DriverError("Empty dataset driver")
        try:
            return self._sets[name]
        except KeyError:
            raise DriverError(f"Unknown dataset driver: {name}")

    def open_tax(self, driver: str, param: str = "") -> Taxonomy:
        """Open a taxonomy.

        Raises:
            DriverError: if the driver is not registered.
        """
        return self._tax_driver(driver).open(param)

    def open_set(self, driver: str, param: str = "") -> SetDB:
        """Open a dataset store.

        Raises:
            DriverError: if the driver is not registered.
        """
        return self._set_driver(driver).open(param)

    def has_set(self, driver: str) -> bool:
        """Is there a dataset driver with the given name?"""
        return driver in self._sets

    def tax_url(self, driver: str, id: str) -> str:
        """Return the web page of a taxon in a service, or an empty string."""
        dr = self._tax.get(driver)
        if dr is None or dr.url is None:
            return ""
        return dr.url(id)

    def set_url(self, driver: str, id: str) -> str:
        """Return the web page of a dataset in a service, or an empty string."""
        dr = self._sets.get(driver)
        if dr is None or dr.url is None:
            return ""
        return dr.url(id)

    def tax_about(self, driver: str) -> str:
        """Return the description of a taxonomy driver, or an empty string."""
        dr = self._tax.get(driver)
        if dr is None or dr.about is None:
            return ""
        return dr.about()

    def set_about(self, driver: str) -> str:
        """Return the description of a dataset driver, or an empty string."""
        dr = self._sets.get(driver)
        if dr is None or dr.about is None:
            return ""
        return dr.about()


def default_registry(resources: Resources) -> DriverRegistry:
    """Create a registry with the drivers provided by the package.

    The `biodv` drivers open the local stores of the configured project directory and
    the `gbif` drivers use the GBIF API.

    Args:
        resources: The package configuration
    """

    registry = DriverRegistry()

    registry.register_tax(
        "biodv",
        TaxDriver(
            open=lambda param: DB.open(param or resources.data_dir),
            about=lambda: "the local taxonomy of the project directory",
        ),
    )
    registry.register_tax(
        "gbif",
        TaxDriver(
            open=lambda param: GBIFTaxonomy.from_resources(resources, param),
            url=taxon_url,
            about=lambda: "a driver for the GBIF taxonomy DB",
        ),
    )
    registry.register_set(
        "biodv",
        SetDriver(
            open=lambda param: DatasetDB.open(param or resources.data_dir),
            about=lambda: "the local dataset store of the project directory",
        ),
    )
    registry.register_set(
        "gbif",
        SetDriver(
            open=lambda param: GBIFDatasets.from_resources(resources, param),
            url=dataset_url,
            about=lambda: "a driver for the GBIF dataset DB",
        ),
    )

    return registry
