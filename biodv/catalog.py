"""This module renders a taxonomic catalog of a taxon and all of its descendants.

The catalog walks the correct children of a taxon in pre-order, listing the synonyms
of each taxon immediately after it. Taxa above the species rank are written as
headings, with the rank label and the name in upper case, followed by a blank line.
Species, and taxa below the species rank, are written as indented entries. Unranked
taxa are formatted using the rank of their nearest ranked ancestor.

Each entry is followed by the list of IDs of the taxon: the ID in the catalogued
taxonomy, as `<driver>:<id>`, and the extern IDs of the taxon. The catalog can be
rendered as plain text, or as a `dominate` HTML `pre` element in which synonyms are
grayed out, generic and specific names are in italics and the IDs link to the web
pages of their services, if the driver provides them.
"""  # noqa D415

from io import StringIO

from dominate import tags

from biodv.drivers import DriverRegistry
from biodv.logger import LOGGER
from biodv.taxon import (
    AUTHOR,
    Rank,
    TaxonRecord,
    Taxonomy,
    extern_ids,
    split_tag,
    tax_list,
)


def get_taxon(
    taxonomy: Taxonomy, name: str, by_id: bool = False
) -> TaxonRecord | None:
    """Find a single taxon by name or ID.

    A name that matches several taxa of an external taxonomy is reported, listing the
    candidates, and no taxon is returned.

    Args:
        taxonomy: The taxonomy to search
        name: A taxon name, or a taxon ID if `by_id` is set
        by_id: Search the taxon by ID
    """

    if by_id:
        return taxonomy.taxon_by_id(name)

    candidates = tax_list(taxonomy.taxon_by_name(name))
    if not candidates:
        LOGGER.warning(f"Taxon {name} not found")
        return None
    if len(candidates) > 1:
        LOGGER.warning(f"Ambiguous name {name}: ", extra={"join": candidates})
        return None
    return candidates[0]


def _label(*parts: str) -> str:
    return " ".join(p for p in parts if p)


def taxon_catalog(
    taxonomy: Taxonomy,
    taxon: TaxonRecord,
    html: bool = False,
    db_name: str = "biodv",
    registry: DriverRegistry | None = None,
) -> str | tags.pre:
    """Render the catalog of a taxon as text or html.

    Args:
        taxonomy: The taxonomy that contains the taxon
        taxon: The first taxon of the catalog
        html: Render as html or text.
        db_name: The driver name of the taxonomy, used as the prefix of the taxon IDs
        registry: A driver registry used to link the IDs to their web pages

    Returns:
        Either a HTML `pre` element or a text representation of the catalog.
    """

    def _ids(tx: TaxonRecord) -> list[str]:
        return [f"{db_name}:{tx.id}"] + extern_ids(tx)

    def _id_links(tx: TaxonRecord) -> tags.small:
        out = tags.small()
        out.add("[")
        for idx, value in enumerate(_ids(tx)):
            if idx:
                out.add(" ")
            url = ""
            if registry is not None:
                url = registry.tax_url(*split_tag(value))
            out.add(tags.a(value, href=url) if url else value)
        out.add("]")
        return out

    def _text_entry(tx: TaxonRecord, rank: Rank, syns: list[TaxonRecord]) -> str:
        author = tx.value(AUTHOR)
        ids = " ".join(_ids(tx))

        if rank < Rank.SPECIES:
            rk = "" if tx.rank == Rank.UNRANKED else str(tx.rank).upper()
            txt = f"\n{_label(rk, tx.name.upper(), author)}\n\t\t[{ids}]\n"
            for syn in syns:
                txt += f"\t{_label(syn.name, syn.value(AUTHOR))} "
                txt += f"[{' '.join(_ids(syn))}]\n"
            return txt + "\n"

        if tx.rank == Rank.SPECIES:
            txt = f"\t{_label(tx.name, author)}\n\t\t\t[{ids}]\n"
            indent = "\t\t"
        else:
            txt = f"\t\t{_label(tx.name, author)} [{ids}]\n"
            indent = "\t\t\t"

        for syn in syns:
            txt += f"{indent}{_label(syn.name, syn.value(AUTHOR))} "
            txt += f"[{' '.join(_ids(syn))}]\n"
        return txt

    def _synonym(syn: TaxonRecord, italics: bool) -> tags.span:
        out = tags.span(style="color: gray")
        out.add(tags.i(syn.name) if italics else syn.name)
        out.add(f" {syn.value(AUTHOR)} " if syn.value(AUTHOR) else " ")
        out.add(_id_links(syn))
        return out

    def _html_entry(
        out: tags.pre, tx: TaxonRecord, rank: Rank, syns: list[TaxonRecord]
    ) -> None:
        author = tx.value(AUTHOR)
        sep = f" {author} " if author else " "

        if rank < Rank.SPECIES:
            name = tx.name.upper()
            out.add("\n")
            if tx.rank != Rank.UNRANKED:
                out.add(f"{str(tx.rank).capitalize()} ")
            out.add(tags.strong(tags.i(name) if tx.rank == Rank.GENUS else name))
            out.add(sep, _id_links(tx), "\n")
            for syn in syns:
                out.add("\t", _synonym(syn, syn.rank == Rank.GENUS), "\n")
            return

        indent = "\t" if tx.rank == Rank.SPECIES else "\t\t"
        out.add(indent, tags.i(tx.name), sep, _id_links(tx), "\n")
        for syn in syns:
            out.add(indent + "\t", _synonym(syn, True), "\n")

    if html:
        html_out = tags.pre()
    else:
        txt_out = StringIO()

    # Walk the correct children in pre-order, keeping the inherited rank
    stack = [(taxon, Rank.UNRANKED)]
    while stack:
        current, prev = stack.pop()
        rank = prev if current.rank == Rank.UNRANKED else current.rank
        syns = tax_list(taxonomy.synonyms(current.id))

        if html:
            _html_entry(html_out, current, rank, syns)
        else:
            txt_out.write(_text_entry(current, rank, syns))

        children = tax_list(taxonomy.children(current.id))
        stack.extend((child, rank) for child in reversed(children))

    if html:
        return html_out
    return txt_out.getvalue()
