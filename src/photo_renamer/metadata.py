"""
Read embedded people tags from photo metadata.

Three tagging conventions are recognized, each by its own parser:
 - Microsoft People Tags (Windows Photo Gallery): MP:RegionInfo / MP:Regions
 - Metadata Working Group regions (Lightroom, Bridge, digiKam): mwg-rs:RegionInfo
 - IPTC Extension PersonInImage

Parsers are lenient. A missing or malformed container yields no people; it never raises.
"""

import base64
import binascii
import html
import math
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import ClassVar, NamedTuple, Protocol

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger

from photo_renamer.models import (
    BoundingBox,
    ExtractionResult,
    PersonTag,
    RawMetadata,
    SchemaName,
)


RECTANGLE_COMPONENTS = 4
METADATA_TAGS = (
    "XMP",
    "EXIF:Software",
    "EXIF:ProcessingSoftware",
    "EXIF:DateTimeOriginal",
    "EXIF:CreateDate",
    "EXIF:ModifyDate",
)

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9_]")
_UNDERSCORES_RE = re.compile(r"_+")
_RDF_LI_RE = re.compile(r"<rdf:li(?=[\s>])[^>]*(?<!/)>(.*?)</rdf:li>", re.DOTALL)


class Candidate(NamedTuple):
    """A person entry as written by the tagging software, before normalization."""

    name: str
    bounding_box: BoundingBox | None = None


def normalize_name(name: str) -> str:
    """
    Turn a person name into a filename token.

    Examples:
        >>> normalize_name("  Mary Jane  O'Neil ")
        'mary_jane_oneil'
        >>> normalize_name("???")
        ''

    """
    token = _WHITESPACE_RE.sub("_", name.lower())
    token = _INVALID_CHARS_RE.sub("", token)
    token = _UNDERSCORES_RE.sub("_", token)
    return token.strip("_")


def _container(xmp: str, tag: str) -> str | None:
    """Return the inner text of the first <tag>...</tag> element, if any."""
    pattern = rf"<{re.escape(tag)}(?=[\s>])[^>]*>(.*?)</{re.escape(tag)}>"
    match = re.search(pattern, xmp, re.DOTALL)
    return match.group(1) if match else None


def _field(fragment: str, tag: str) -> str | None:
    """
    Read a simple text field written either as an element or as an attribute.

    Examples:
        >>> _field("<MP:Name>Ann</MP:Name>", "MP:Name")
        'Ann'
        >>> _field('<rdf:Description MP:Name="Ann"/>', "MP:Name")
        'Ann'

    """
    escaped = re.escape(tag)
    element = re.search(rf"<{escaped}(?=[\s>])[^>]*>([^<]+)</{escaped}>", fragment)
    if element:
        value = element.group(1)
    else:
        attribute = re.search(rf"""(?<![\w:-]){escaped}\s*=\s*(["'])(.*?)\1""", fragment)
        if not attribute:
            return None
        value = attribute.group(2)
    value = html.unescape(value).strip()
    return value or None


def parse_rectangle(value: str | None) -> BoundingBox | None:
    """
    Parse a Microsoft 'x, y, width, height' rectangle.

    Anything other than exactly four finite numbers in [0, 1] yields None.

    Examples:
        >>> parse_rectangle("0.1, 0.2, 0.3, 0.4")
        BoundingBox(x=0.1, y=0.2, width=0.3, height=0.4)
        >>> parse_rectangle("0.1, 0.2, 0.3") is None
        True
        >>> parse_rectangle("1.5, 0.2, 0.3, 0.4") is None
        True

    """
    if not value:
        return None
    parts = value.split(",")
    if len(parts) != RECTANGLE_COMPONENTS:
        return None
    try:
        coords = [float(part.strip()) for part in parts]
    except ValueError:
        return None
    if not all(math.isfinite(c) and 0 <= c <= 1 for c in coords):
        return None
    x, y, width, height = coords
    return BoundingBox(x=x, y=y, width=width, height=height)


class SchemaSource(Protocol):
    """Anything that can list the people one tagging convention records."""

    name: SchemaName

    def scan(self, xmp: str) -> list[Candidate]: ...


class SchemaParser(ABC):
    """Base parser: subclasses implement _parse, scan() guarantees it never raises."""

    name: ClassVar[SchemaName]

    def scan(self, xmp: str) -> list[Candidate]:
        if not xmp:
            return []
        try:
            candidates = self._parse(xmp)
        except Exception as exc:  # noqa: BLE001
            logger.warning("schema_parse_failed", schema=self.name, error=str(exc))
            return []
        if candidates:
            logger.debug("schema_people_found", schema=self.name, count=len(candidates))
        return candidates

    @abstractmethod
    def _parse(self, xmp: str) -> list[Candidate]: ...


def _first_field(fragment: str, tags: tuple[str, ...]) -> str | None:
    return next((value for tag in tags if (value := _field(fragment, tag))), None)


class MicrosoftPeopleParser(SchemaParser):
    """
    Windows Photo Gallery people regions, with optional rectangles.

    Windows writes region fields under the MPRI/MPReg prefixes; older tools put
    everything under MP. Both are accepted.
    """

    name = "microsoft"
    regions_tags = ("MP:Regions", "MPRI:Regions")
    name_fields = (
        "MP:PersonDisplayName",
        "MPReg:PersonDisplayName",
        "MP:Name",
        "MP:Person",
    )
    rectangle_fields = ("MP:Rectangle", "MPReg:Rectangle")

    def _parse(self, xmp: str) -> list[Candidate]:
        region_info = _container(xmp, "MP:RegionInfo")
        if region_info is None:
            return []
        regions = next(
            (found for tag in self.regions_tags if (found := _container(region_info, tag))),
            None,
        )
        if regions is None:
            return []

        candidates: list[Candidate] = []
        for region in _RDF_LI_RE.findall(regions):
            person = _first_field(region, self.name_fields)
            if person is None:
                continue
            rectangle = parse_rectangle(_first_field(region, self.rectangle_fields))
            candidates.append(Candidate(person, rectangle))
        return candidates


class MWGRegionParser(SchemaParser):
    """Metadata Working Group regions. Only the name is read."""

    name = "mwg"

    def _parse(self, xmp: str) -> list[Candidate]:
        scope = _container(xmp, "mwg-rs:RegionInfo") or xmp
        region_list = _container(scope, "mwg-rs:RegionList")
        if region_list is None:
            region_list = _container(scope, "mwg-rs:Regions")
        if region_list is None:
            return []

        candidates: list[Candidate] = []
        for region in _RDF_LI_RE.findall(region_list):
            person = _field(region, "mwg-rs:Name")
            if person:
                candidates.append(Candidate(person))
        return candidates


class IPTCPersonParser(SchemaParser):
    """IPTC Extension PersonInImage, either repeated elements or an rdf:Bag."""

    name = "iptc"
    tag = "Iptc4xmpExt:PersonInImage"

    def _parse(self, xmp: str) -> list[Candidate]:
        escaped = re.escape(self.tag)
        pattern = rf"<{escaped}(?=[\s>])[^>]*>(.*?)</{escaped}>"
        candidates: list[Candidate] = []
        for inner in re.findall(pattern, xmp, re.DOTALL):
            if "<" not in inner:
                entries = [inner]
            else:
                entries = re.findall(r"<rdf:li(?=[\s>])[^>]*>([^<]+)</rdf:li>", inner)
            for entry in entries:
                person = html.unescape(entry).strip()
                if person:
                    candidates.append(Candidate(person))
        return candidates


DEFAULT_PARSERS: tuple[SchemaSource, ...] = (
    MicrosoftPeopleParser(),
    MWGRegionParser(),
    IPTCPersonParser(),
)


def _merge_candidates(
    scanned: list[tuple[SchemaName, list[Candidate]]],
) -> list[PersonTag]:
    """
    Normalize and deduplicate candidates, first occurrence wins.

    The first schema to list a name decides its provenance and bounding box.
    """
    people: list[PersonTag] = []
    seen: set[str] = set()
    for schema_name, candidates in scanned:
        for candidate in candidates:
            token = normalize_name(candidate.name)
            if not token or token in seen:
                continue
            seen.add(token)
            people.append(
                PersonTag(name=token, bounding_box=candidate.bounding_box, schema=schema_name),
            )
    return people


def extract(
    raw_metadata: RawMetadata | str | None,
    parsers: tuple[SchemaSource, ...] = DEFAULT_PARSERS,
) -> ExtractionResult:
    """
    Collect people tags from a metadata blob across every known schema.

    Args:
        raw_metadata: Metadata read by read_photo_metadata(), a raw XMP packet, or None.
        parsers: Schema parsers, in priority order (Microsoft, MWG, IPTC by default).

    Returns:
        ExtractionResult with deduplicated people in first-seen order. Never raises.

    """
    if raw_metadata is None:
        return ExtractionResult()
    if isinstance(raw_metadata, str):
        raw_metadata = RawMetadata(xmp=raw_metadata)

    software = raw_metadata.software or raw_metadata.processing_software
    xmp = raw_metadata.xmp or ""
    try:
        scanned = [(parser.name, parser.scan(xmp)) for parser in parsers]
        people = _merge_candidates(scanned)
    except Exception as exc:  # noqa: BLE001
        logger.exception("people_tag_extraction_failed", error=str(exc))
        return ExtractionResult(tagging_software=software)

    if people:
        logger.info(
            "embedded_people_found",
            count=len(people),
            names=[p.name for p in people],
        )
    else:
        logger.debug("no_embedded_people_found", has_xmp=bool(xmp))
    return ExtractionResult(people=people, tagging_software=software)


def _metadata_targets(image_path: Path) -> list[str]:
    """
    Return the file paths that may contain metadata for an image.

    Examples:
        >>> _metadata_targets(Path("/photos/image.jpg"))  # doctest: +SKIP
        ['/photos/image.jpg', '/photos/image.xmp']

    """
    targets: list[str] = []
    xmp_path = image_path.with_suffix(".xmp")
    if image_path.exists():
        targets.append(str(image_path))
    if xmp_path.exists() and xmp_path != image_path:
        targets.append(str(xmp_path))
    return targets


def _decode_packet(value: object) -> str | None:
    """
    Decode an XMP packet as returned by 'exiftool -j -b'.

    Examples:
        >>> _decode_packet("base64:PHg+")
        '<x>'

    """
    if value in (None, ""):
        return None
    text = str(value)
    if text.startswith("base64:"):
        try:
            return base64.b64decode(text.removeprefix("base64:")).decode("utf-8", "replace")
        except (binascii.Error, ValueError):
            logger.warning("xmp_packet_decode_failed")
            return None
    return text


def _tag_value(block: dict[str, object], tag: str) -> str | None:
    """Look up a tag by its short name, whichever group ExifTool reported it under."""
    for key, value in block.items():
        if key.rsplit(":", 1)[-1] == tag and value not in (None, ""):
            return str(value)
    return None


def metadata_from_blocks(blocks: list[dict[str, object]]) -> RawMetadata | None:
    """Fold ExifTool JSON blocks (image first, sidecar second) into one RawMetadata."""
    packets = [p for block in blocks if (p := _decode_packet(_tag_value(block, "XMP")))]
    fields: dict[str, str | None] = {
        "software": None,
        "processing_software": None,
        "date_time_original": None,
        "create_date": None,
        "modify_date": None,
    }
    tag_names = {
        "software": "Software",
        "processing_software": "ProcessingSoftware",
        "date_time_original": "DateTimeOriginal",
        "create_date": "CreateDate",
        "modify_date": "ModifyDate",
    }
    for block in blocks:
        for field, tag in tag_names.items():
            if fields[field] is None:
                fields[field] = _tag_value(block, tag)

    if not packets and not any(fields.values()):
        return None
    return RawMetadata(xmp="\n".join(packets) if packets else None, **fields)


def read_photo_metadata(image_path: Path) -> RawMetadata | None:
    """
    Read the raw XMP packet plus software and date fields using pyexiftool.

    Args:
        image_path: Path to the image. An adjacent .xmp sidecar is read as well.

    Returns:
        RawMetadata, or None when no metadata could be read.

    """
    targets = _metadata_targets(image_path)
    if not targets:
        logger.info("no_metadata_targets_found")
        return None

    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            blocks = et.get_tags(files=targets, tags=list(METADATA_TAGS), params=["-b"])
    except (OSError, ValueError, TypeError, ExifToolExecuteError) as e:
        logger.exception("failed_to_read_metadata", error=str(e))
        return None

    metadata = metadata_from_blocks(blocks)
    logger.debug(
        "photo_metadata_read",
        has_xmp=bool(metadata and metadata.xmp),
        software=metadata.software if metadata else None,
    )
    return metadata
