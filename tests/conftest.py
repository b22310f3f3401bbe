"""Shared test fixtures: XMP packets in each people-tagging convention."""

from collections.abc import Sequence

import pytest
from loguru import logger


XMP_HEADER = (
    '<x:xmpmeta xmlns:x="adobe:ns:meta/">\n'
    ' <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">\n'
    '  <rdf:Description rdf:about=""\n'
    '    xmlns:MP="http://ns.microsoft.com/photo/1.2/"\n'
    '    xmlns:mwg-rs="http://www.metadataworkinggroup.com/schemas/regions/"\n'
    '    xmlns:Iptc4xmpExt="http://iptc.org/std/Iptc4xmpExt/2008-02-29/">\n'
)
XMP_FOOTER = "  </rdf:Description>\n </rdf:RDF>\n</x:xmpmeta>\n"


def microsoft_block(regions: Sequence[tuple[str, str | None]]) -> str:
    """MP:RegionInfo with one rdf:li per (name, rectangle) pair."""
    items = []
    for name, rectangle in regions:
        rect = f"<MP:Rectangle>{rectangle}</MP:Rectangle>" if rectangle is not None else ""
        items.append(
            '<rdf:li rdf:parseType="Resource">'
            f"<MP:PersonDisplayName>{name}</MP:PersonDisplayName>{rect}"
            "</rdf:li>",
        )
    return (
        '<MP:RegionInfo rdf:parseType="Resource"><MP:Regions><rdf:Bag>'
        + "".join(items)
        + "</rdf:Bag></MP:Regions></MP:RegionInfo>\n"
    )


def mwg_block(names: Sequence[str]) -> str:
    """mwg-rs:RegionInfo written with element-form names."""
    items = "".join(
        f'<rdf:li rdf:parseType="Resource"><mwg-rs:Name>{name}</mwg-rs:Name>'
        "<mwg-rs:Type>Face</mwg-rs:Type></rdf:li>"
        for name in names
    )
    return (
        '<mwg-rs:RegionInfo rdf:parseType="Resource"><mwg-rs:Regions><rdf:Bag>'
        + items
        + "</rdf:Bag></mwg-rs:Regions></mwg-rs:RegionInfo>\n"
    )


def iptc_bag_block(names: Sequence[str]) -> str:
    items = "".join(f"<rdf:li>{name}</rdf:li>" for name in names)
    return f"<Iptc4xmpExt:PersonInImage><rdf:Bag>{items}</rdf:Bag></Iptc4xmpExt:PersonInImage>\n"


def xmp_packet(*blocks: str) -> str:
    return XMP_HEADER + "".join(blocks) + XMP_FOOTER


@pytest.fixture
def mom_xmp() -> str:
    """A single Microsoft region: Mom with a rectangle."""
    return xmp_packet(microsoft_block([("Mom", "0.1,0.2,0.3,0.4")]))


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="DEBUG", format="{message}")
    yield messages
    logger.remove(handler_id)
