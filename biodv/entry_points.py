"""Provide command line scripts.

This module provides the function exposed as the command line entry point:

* ``_biodv_cli``, exposed as `biodv`

The `biodv` command works on the taxonomy of a project directory (by default the
current directory, but it can be set in the configuration) through a set of
subcommands, such as `tax.add` or `tax.db.sync`.
"""

import argparse
import sys
import textwrap
from collections.abc import Iterator
from pathlib import Path

from dominate import tags

from biodv import __version__
from biodv.catalog import get_taxon, taxon_catalog
from biodv.dataset import DatasetError
from biodv.drivers import (
    DriverError,
    DriverRegistry,
    default_registry,
    parse_driver_string,
)
from biodv.gbif import GBIFError
from biodv.logger import (
    FORMATTER,
    LOGGER,
    get_handler,
    use_file_logging,
    use_stream_logging,
)
from biodv.resources import Resources
from biodv.stanza import StanzaError
from biodv.sync import Synchronizer
from biodv.taxon import AUTHOR, Rank, tax_list, tax_parents
from biodv.taxonomy import DB, TaxonomyError, add_names, collapse_unranked

CLI_ERRORS = (
    TaxonomyError,
    DatasetError,
    DriverError,
    GBIFError,
    StanzaError,
    ValueError,
    OSError,
)
"""tuple: The exceptions that are reported by the command line as a failure."""

STATUS_VALUES = {
    "correct": True,
    "accepted": True,
    "valid": True,
    "true": True,
    "synonym": False,
    "false": False,
}


def _desc_formatter(prog):
    """Bespoke argparse description formatting."""
    return argparse.RawDescriptionHelpFormatter(prog, max_help_position=16)


def _rank(value: str) -> Rank:
    """Argparse type for ranks, rejecting unknown values."""
    try:
        return Rank.strict(value)
    except ValueError as excep:
        raise argparse.ArgumentTypeError(str(excep))


def _status(value: str) -> bool:
    """Argparse type for the status of a taxon."""
    try:
        return STATUS_VALUES[value.lower()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"invalid status value: {value}")


def _read_names(paths: list[str]) -> Iterator[str]:
    """Read names, one per line, from files or from stdin ('-')."""

    for path in paths or ["-"]:
        if path == "-":
            yield from sys.stdin
            continue
        with open(path, encoding="utf-8") as stream:
            yield from stream


def _describe(tx) -> str:
    """Name and author of a taxon, for the command line output."""
    author = tx.value(AUTHOR)
    return f"{tx.name} {author}".strip()


def _biodv_cli(args_list: list[str] | None = None) -> int:
    """Manage the taxonomy of a biodiversity data project.

    This program provides a set of subcommands to edit the taxonomy of a
    project directory, to query taxonomies (both the local taxonomy and
    external taxonomies such as the GBIF backbone) and to synchronize the
    local taxonomy with an external taxonomy. The list of subcommands is
    shown below and individual help is available for each of them:

        biodv subcommand -h

    External taxonomies are identified by a driver string, such as `gbif`.
    The `db.drivers` subcommand lists the available drivers.

    The local taxonomy is stored in `taxonomy/taxonomy.stz` inside the
    project directory, which defaults to the current directory and can be
    changed in the configuration file. The commands that change the
    taxonomy only write it if the command succeeds, except for the
    external database commands, which always write the changes that could
    be made and report the taxa that could not be processed.

    The command outputs a log of the process, which identifies problems.
    This defaults to being written to stderr but can be redirected to a
    file using the `--log` option.

    Args:
        args_list: This is a developer option used to simulate command line usage by
            providing a list of command line argument strings to the entry point
            function. For example, ``biodv tax.list Homo`` can be replicated by
            calling ``_biodv_cli(['tax.list', 'Homo'])``.

    Returns:
        An integer code showing success (0) or failure (1).
    """

    # If no arguments list is provided
    if args_list is None:
        args_list = sys.argv[1:]

    # Check function docstring exists to safeguard against -OO mode, and strip off the
    # description of the function args_list, which should not be included in the command
    # line docs
    if _biodv_cli.__doc__ is not None:
        desc = textwrap.dedent("\n".join(_biodv_cli.__doc__.splitlines()[:-10]))
    else:
        desc = "Python in -OO mode: no docs"

    # create the top-level parser and configure to take subparsers
    parser = argparse.ArgumentParser(
        prog="biodv",
        description=desc,
        formatter_class=_desc_formatter,
    )

    parser.add_argument(
        "-r",
        "--resources",
        type=str,
        default=None,
        help="Path to a biodv resource configuration file",
    )

    parser.add_argument(
        "-l",
        "--log",
        default=None,
        type=Path,
        help="Save the log to a file, not print to the console.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress normal information messages. ",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Shared arguments
    parse_name = argparse.ArgumentParser(add_help=False)
    parse_name.add_argument(
        "name", nargs="*", default=[], help="A taxon name (or ID with --id)"
    )

    parse_db = argparse.ArgumentParser(add_help=False)
    parse_db.add_argument(
        "--db",
        type=str,
        default="biodv",
        help="The taxonomy driver to use, as <driver>[:<param>] (default: biodv)",
    )

    parse_extern = argparse.ArgumentParser(add_help=False)
    parse_extern.add_argument(
        "-e",
        "--extern",
        type=str,
        required=True,
        help="The external taxonomy driver, as <driver>[:<param>]",
    )

    subparsers = parser.add_subparsers(dest="subcommand", metavar="")

    # DB.DRIVERS subcommand
    subparsers.add_parser(
        "db.drivers",
        description="List the taxonomy and dataset drivers.",
        help="List the available drivers",
    )

    # TAX.ADD subcommand
    tax_add_desc = """
    Add taxon names to the local taxonomy. The names are read from the given files,
    or from stdin if no file is given, one name per line. Lines that do not start
    with a letter are ignored, as are names already in the taxonomy.

    If the rank is species, the genus of each correct species is used as its parent,
    and the genus is added if it is not in the taxonomy.
    """
    tax_add_parser = subparsers.add_parser(
        "tax.add",
        description=textwrap.dedent(tax_add_desc),
        help="Add taxon names",
        formatter_class=_desc_formatter,
    )
    tax_add_parser.add_argument(
        "files", nargs="*", default=[], help="Files with names ('-' for stdin)"
    )
    tax_add_parser.add_argument(
        "-p", "--parent", type=str, default="", help="The parent of the new taxa"
    )
    tax_add_parser.add_argument(
        "-r",
        "--rank",
        type=_rank,
        default=Rank.UNRANKED,
        help="The rank of the new taxa",
    )
    tax_add_parser.add_argument(
        "-s",
        "--synonym",
        action="store_true",
        default=False,
        help="Add the names as synonyms of the parent",
    )
    tax_add_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Print the added names",
    )

    # TAX.DEL subcommand
    tax_del_desc = """
    Remove a taxon from the local taxonomy. The descendants of the taxon are moved
    to its parent, unless --recurse is used, which removes all of them.
    """
    tax_del_parser = subparsers.add_parser(
        "tax.del",
        description=textwrap.dedent(tax_del_desc),
        help="Remove a taxon",
        formatter_class=_desc_formatter,
        parents=[parse_name],
    )
    tax_del_parser.add_argument(
        "-r",
        "--recurse",
        action="store_true",
        default=False,
        help="Remove the descendants of the taxon",
    )

    # TAX.MOVE subcommand
    tax_move_desc = """
    Change the parent, or the status, of a taxon. If no parent is given, the taxon
    is moved to the root of the taxonomy. The status can be one of correct,
    accepted, valid or true for correct names, and synonym or false for synonyms.

    The descendants of the taxon are moved to the new parent.
    """
    tax_move_parser = subparsers.add_parser(
        "tax.move",
        description=textwrap.dedent(tax_move_desc),
        help="Change the parent of a taxon",
        formatter_class=_desc_formatter,
        parents=[parse_name],
    )
    tax_move_parser.add_argument(
        "--to", type=str, default="", help="The new parent of the taxon"
    )
    tax_move_parser.add_argument(
        "-s", "--status", type=_status, default=None, help="The new status"
    )

    # TAX.RANK subcommand
    tax_rank_parser = subparsers.add_parser(
        "tax.rank",
        description="Change the rank of a taxon.",
        help="Change the rank of a taxon",
        parents=[parse_name],
    )
    tax_rank_parser.add_argument(
        "-r", "--rank", type=_rank, default=Rank.UNRANKED, help="The new rank"
    )

    # TAX.SET subcommand
    tax_set_desc = """
    Set a value of a taxon. An empty value removes the key. The extern key holds
    the IDs of the taxon in external services: a value of the form <service>:<id>
    sets the ID for that service and <service>: removes it.
    """
    tax_set_parser = subparsers.add_parser(
        "tax.set",
        description=textwrap.dedent(tax_set_desc),
        help="Set a taxon value",
        formatter_class=_desc_formatter,
        parents=[parse_name],
    )
    tax_set_parser.add_argument(
        "-k", "--key", type=str, required=True, help="The key to set"
    )
    tax_set_parser.add_argument(
        "-v", "--value", type=str, default="", help="The new value"
    )

    # TAX.FORMAT subcommand
    tax_format_desc = """
    Make synonyms of the unranked taxa, so that each unranked taxon becomes a
    synonym of its parent. Unranked root taxa are not changed.
    """
    subparsers.add_parser(
        "tax.format",
        description=textwrap.dedent(tax_format_desc),
        help="Synonymize unranked taxa",
        formatter_class=_desc_formatter,
        parents=[parse_name],
    )

    # TAX.LIST subcommand
    tax_list_desc = """
    Print the children of a taxon, or the root taxa if no taxon is given. With
    --parents, print the parents of the taxon and with --synonyms, its synonyms.
    """
    tax_list_parser = subparsers.add_parser(
        "tax.list",
        description=textwrap.dedent(tax_list_desc),
        help="Print a list of taxa",
        formatter_class=_desc_formatter,
        parents=[parse_name, parse_db],
    )
    tax_list_parser.add_argument(
        "--id", action="store_true", default=False, help="Search the taxon by ID"
    )
    output_group = tax_list_parser.add_mutually_exclusive_group()
    output_group.add_argument(
        "-m", "--machine", action="store_true", help="Print only the taxon IDs"
    )
    output_group.add_argument(
        "-v", "--verbose", action="store_true", help="Print IDs, names and authors"
    )
    list_group = tax_list_parser.add_mutually_exclusive_group()
    list_group.add_argument(
        "-p", "--parents", action="store_true", help="Print the taxon parents"
    )
    list_group.add_argument(
        "-s", "--synonyms", action="store_true", help="Print the taxon synonyms"
    )

    # TAX.INFO subcommand
    tax_info_parser = subparsers.add_parser(
        "tax.info",
        description="Print the information of a taxon.",
        help="Print taxon information",
        parents=[parse_name, parse_db],
    )
    tax_info_parser.add_argument(
        "--id", action="store_true", default=False, help="Search the taxon by ID"
    )

    # TAX.CATALOG subcommand
    tax_catalog_desc = """
    Print a taxonomic catalog of a taxon and all of its descendants, with the
    synonyms of each taxon. The catalog can be printed as text or as html.
    """
    tax_catalog_parser = subparsers.add_parser(
        "tax.catalog",
        description=textwrap.dedent(tax_catalog_desc),
        help="Print a taxonomic catalog",
        formatter_class=_desc_formatter,
        parents=[parse_name, parse_db],
    )
    tax_catalog_parser.add_argument(
        "--id", action="store_true", default=False, help="Search the taxon by ID"
    )
    tax_catalog_parser.add_argument(
        "-f",
        "--format",
        choices=["txt", "html"],
        type=str.lower,
        default="txt",
        help="The output format",
    )

    # TAX.DB.ADD subcommand
    tax_db_add_desc = """
    Add taxon names validated on an external taxonomy. The names are read from the
    given files, or from stdin if no file is given, one name per line, and are
    added with their ancestors down to the --uprank rank. The names that can not be
    added are printed on stdout.
    """
    tax_db_add_parser = subparsers.add_parser(
        "tax.db.add",
        description=textwrap.dedent(tax_db_add_desc),
        help="Add taxa validated on an external taxonomy",
        formatter_class=_desc_formatter,
        parents=[parse_extern],
    )
    tax_db_add_parser.add_argument(
        "files", nargs="*", default=[], help="Files with names ('-' for stdin)"
    )
    tax_db_add_parser.add_argument(
        "-u",
        "--uprank",
        type=_rank,
        default=Rank.GENUS,
        help="The most inclusive rank of the added ancestors (default: genus)",
    )

    # TAX.DB.FILL subcommand
    tax_db_fill_desc = """
    Add taxa from an external taxonomy. By default, the synonyms of the linked taxa,
    and the children of linked species, are added. With --uprank, the ancestors of
    the taxa are added instead, up to the given rank.
    """
    tax_db_fill_parser = subparsers.add_parser(
        "tax.db.fill",
        description=textwrap.dedent(tax_db_fill_desc),
        help="Add taxa from an external taxonomy",
        formatter_class=_desc_formatter,
        parents=[parse_extern, parse_name],
    )
    tax_db_fill_parser.add_argument(
        "-u",
        "--uprank",
        type=_rank,
        default=None,
        help="Add the ancestors of the taxa, up to this rank",
    )

    # TAX.DB.UPDATE subcommand
    tax_db_update_desc = """
    Link the taxa to an external taxonomy and update their values (author,
    reference, source) with the external values. The name, rank, parent and status
    of the taxa are never changed. With --match, only the taxa without a link are
    linked, and no values are updated.
    """
    tax_db_update_parser = subparsers.add_parser(
        "tax.db.update",
        description=textwrap.dedent(tax_db_update_desc),
        help="Update taxon information from an external taxonomy",
        formatter_class=_desc_formatter,
        parents=[parse_extern, parse_name],
    )
    tax_db_update_parser.add_argument(
        "-m",
        "--match",
        action="store_true",
        default=False,
        help="Only link the taxa, without updating their values",
    )

    # TAX.DB.SYNC subcommand
    tax_db_sync_desc = """
    Synchronize the rank, status and parent of the linked taxa with an external
    taxonomy. The changes that could be made are always written, and the taxa that
    could not be synchronized are reported.
    """
    subparsers.add_parser(
        "tax.db.sync",
        description=textwrap.dedent(tax_db_sync_desc),
        help="Synchronize the local taxonomy to an external taxonomy",
        formatter_class=_desc_formatter,
        parents=[parse_extern, parse_name],
    )

    args = parser.parse_args(args=args_list)

    if args.subcommand is None:
        parser.print_usage()
        return 0

    # Configure the logging location
    if args.log is None:
        use_stream_logging()
    else:
        use_file_logging(args.log)

    # Set the verbosity
    handler = get_handler()
    if args.quiet:
        # Don't suppress error messages
        handler.setLevel("ERROR")
    else:
        handler.setLevel("INFO")

    # Load resources
    try:
        resources = Resources(args.resources)
    except (RuntimeError, TypeError) as excep:
        LOGGER.error(f"Failed to load resources: {excep}")
        return 1

    registry = default_registry(resources)

    commands = {
        "db.drivers": _db_drivers,
        "tax.add": _tax_add,
        "tax.del": _tax_del,
        "tax.move": _tax_move,
        "tax.rank": _tax_rank,
        "tax.set": _tax_set,
        "tax.format": _tax_format,
        "tax.list": _tax_list,
        "tax.info": _tax_info,
        "tax.catalog": _tax_catalog,
        "tax.db.add": _tax_db_add,
        "tax.db.fill": _tax_db_fill,
        "tax.db.update": _tax_db_update,
        "tax.db.sync": _tax_db_sync,
    }

    try:
        return commands[args.subcommand](args, resources, registry)
    except CLI_ERRORS as excep:
        LOGGER.error(f"{args.subcommand}: {excep}")
        return 1


#
# Subcommands
#


def _db_drivers(args, resources: Resources, registry: DriverRegistry) -> int:
    print("Taxonomy drivers:")
    for name in registry.tax_drivers():
        print(f"    {name}: {registry.tax_about(name)}")
    print("Dataset drivers:")
    for name in registry.set_drivers():
        print(f"    {name}: {registry.set_about(name)}")
    return 0


def _taxon_name(args) -> str:
    name = " ".join(args.name)
    if not name:
        raise ValueError("a taxon name should be given")
    return name


def _local_taxon(db: DB, args):
    name = _taxon_name(args)
    tax = db.tax_ed(name)
    if tax is None:
        raise TaxonomyError(f"Taxon '{name}' not in database")
    return tax


def _tax_add(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    if args.synonym and not args.parent:
        raise TaxonomyError("synonym taxa require a parent")

    added = add_names(
        db,
        _read_names(args.files),
        parent=args.parent,
        rank=args.rank,
        correct=not args.synonym,
    )
    if args.verbose:
        for tax in added:
            print(tax.name)

    db.commit()
    LOGGER.info(f"{len(added)} taxa added")
    return 0


def _tax_del(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    tax = _local_taxon(db, args)
    tax.delete(recurse=args.recurse)
    db.commit()
    return 0


def _tax_move(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    tax = _local_taxon(db, args)

    parent = ""
    if args.to:
        ptax = db.tax_ed(args.to)
        if ptax is None:
            raise TaxonomyError(f"Parent '{args.to}' not in database")
        parent = ptax.id

    correct = tax.correct if args.status is None else args.status
    tax.move(parent, correct)
    db.commit()
    return 0


def _tax_rank(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    tax = _local_taxon(db, args)
    tax.set_rank(args.rank)
    db.commit()
    return 0


def _tax_set(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    tax = _local_taxon(db, args)
    tax.set(args.key, args.value)
    db.commit()
    return 0


def _tax_format(args, resources: Resources, registry: DriverRegistry) -> int:
    db = DB.open(resources.data_dir)
    count = collapse_unranked(db, " ".join(args.name))
    db.commit()
    LOGGER.info(f"{count} unranked taxa made synonyms")
    return 0


def _tax_list(args, resources: Resources, registry: DriverRegistry) -> int:
    driver, param = parse_driver_string(args.db)
    taxonomy = registry.open_tax(driver, param)

    id = " ".join(args.name)
    if id and not args.id:
        tax = get_taxon(taxonomy, id)
        if tax is None:
            return 1
        id = tax.id

    if args.synonyms or args.parents:
        if not id:
            raise ValueError("a taxon should be given to list its synonyms or parents")
        if args.synonyms:
            taxa = tax_list(taxonomy.synonyms(id))
        else:
            taxa = tax_parents(taxonomy, id)
    else:
        taxa = tax_list(taxonomy.children(id))

    for tax in taxa:
        if args.machine:
            print(tax.id)
        elif args.verbose:
            print(f"{tax.id}\t{_describe(tax)}")
        else:
            print(tax.name)
    return 0


def _tax_info(args, resources: Resources, registry: DriverRegistry) -> int:
    driver, param = parse_driver_string(args.db)
    taxonomy = registry.open_tax(driver, param)

    tax = get_taxon(taxonomy, _taxon_name(args), by_id=args.id)
    if tax is None:
        return 1

    parent = taxonomy.taxon_by_id(tax.parent) if tax.parent else None

    print(_describe(tax))
    print(f"{driver}-ID: {tax.id}")
    print(f"\tRank: {tax.rank}")
    if tax.correct:
        print("\tCorrect-Valid name")
        for syn in tax_list(taxonomy.synonyms(tax.id)):
            print(f"\t\t{_describe(syn)} [{driver}:{syn.id}]")
    elif parent is not None:
        print(f"\tSynonym of {_describe(parent)} [{driver}:{parent.id}]")

    if parent is not None and tax.correct:
        print(f"\tParent: {_describe(parent)} [{driver}:{parent.id}]")

    if tax.correct:
        children = tax_list(taxonomy.children(tax.id))
        if children:
            print("\tContained taxa:")
        for child in children:
            print(f"\t\t{_describe(child)} [{driver}:{child.id}]")

    for key in tax.keys():
        if key != AUTHOR:
            print(f"\t{key}: {tax.value(key)}")
    return 0


def _tax_catalog(args, resources: Resources, registry: DriverRegistry) -> int:
    driver, param = parse_driver_string(args.db)
    taxonomy = registry.open_tax(driver, param)

    tax = get_taxon(taxonomy, _taxon_name(args), by_id=args.id)
    if tax is None:
        return 1

    if args.format == "txt":
        sys.stdout.write(taxon_catalog(taxonomy, tax, db_name=driver))
        return 0

    catalog = taxon_catalog(
        taxonomy, tax, html=True, db_name=driver, registry=registry
    )
    page = tags.html(
        tags.head(tags.meta(charset="utf-8"), tags.title(f"Catalog of {tax.name}")),
        tags.body(catalog),
    )
    sys.stdout.write(page.render(pretty=False) + "\n")
    return 0


def _synchronizer(args, resources: Resources, registry: DriverRegistry):
    return Synchronizer.open(
        registry,
        args.extern,
        data_dir=resources.data_dir,
        max_iterations=resources.sync.max_iterations,
    )


def _tax_db_add(args, resources: Resources, registry: DriverRegistry) -> int:
    syncer = _synchronizer(args, resources, registry)
    not_added = syncer.add_names(_read_names(args.files), rank=args.uprank)
    syncer.commit()

    for name in not_added:
        print(name)
    return 0


def _tax_db_fill(args, resources: Resources, registry: DriverRegistry) -> int:
    syncer = _synchronizer(args, resources, registry)
    name = " ".join(args.name)
    if args.uprank is None:
        syncer.fill(name)
    else:
        syncer.fill_up(args.uprank, name)
    syncer.commit()
    return 0


def _tax_db_update(args, resources: Resources, registry: DriverRegistry) -> int:
    syncer = _synchronizer(args, resources, registry)
    syncer.update(" ".join(args.name), match_only=args.match)
    syncer.commit()
    return 0


def _tax_db_sync(args, resources: Resources, registry: DriverRegistry) -> int:
    syncer = _synchronizer(args, resources, registry)
    report = syncer.sync(" ".join(args.name))
    syncer.commit()

    if report.ok:
        return 0

    LOGGER.error("Synchronization incomplete:")
    FORMATTER.push()
    LOGGER.error(f"{len(report.unmoved)} taxa not moved")
    LOGGER.error(f"{len(report.failed)} taxa with a synonym as parent")
    LOGGER.error(f"{len(report.unranked)} taxa left unranked")
    FORMATTER.pop()
    return 1
