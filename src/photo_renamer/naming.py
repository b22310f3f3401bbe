"""Filename assembly: date token, people, description."""

import re
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from photo_renamer.models import RawMetadata


PEOPLE_SEPARATOR = "_and_"
FALLBACK_PREFIX = "processed"
MAX_DESCRIPTION_LENGTH = 80
MIN_UNDERSCORES_FOR_RENAMED = 2
EXIF_DATETIME_LENGTH = 19

_ALREADY_RENAMED_PATTERNS = (
    re.compile(r"^\d{4}_\d{2}_\d{2}_"),
    re.compile(r"_\d{4}[-_]\d{2}[-_]\d{2}"),
    re.compile(r"_\d{8}[-_]"),
    re.compile(r"^[a-z]+_[a-z]+_[a-z]+", re.IGNORECASE),
    re.compile(
        r"sunset|sunrise|landscape|portrait|selfie|group|beach|mountain|city|nature|food|pet|dog|cat",
        re.IGNORECASE,
    ),
)
_TRAILING_IMAGE_EXT_RE = re.compile(r"\.(jpe?g|png|gif|webp|tiff?|bmp|heic)$", re.IGNORECASE)


def looks_already_renamed(filename: str) -> bool:
    """
    Guess whether a file already carries a descriptive name.

    Examples:
        >>> looks_already_renamed("IMG_0042.JPG")
        False
        >>> looks_already_renamed("2023_07_04_mom_beach_picnic.jpg")
        True

    """
    if filename.count("_") < MIN_UNDERSCORES_FOR_RENAMED:
        return False
    return any(pattern.search(filename) for pattern in _ALREADY_RENAMED_PATTERNS)


def format_date_token(value: datetime) -> str:
    """
    Examples:
        >>> format_date_token(datetime(2023, 7, 4, 18, 30))
        '2023_07_04'

    """
    return value.strftime("%Y_%m_%d")


def parse_exif_datetime(value: str | None) -> datetime | None:
    """
    Parse an EXIF 'YYYY:MM:DD HH:MM:SS' timestamp, ignoring subseconds and offsets.

    Examples:
        >>> parse_exif_datetime("2023:07:04 18:30:00+02:00")
        datetime.datetime(2023, 7, 4, 18, 30)
        >>> parse_exif_datetime("0000:00:00 00:00:00") is None
        True

    """
    if not value:
        return None
    head = value.strip()[:EXIF_DATETIME_LENGTH]
    for fmt in ("%Y:%m:%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(head, fmt)  # noqa: DTZ007
        except ValueError:
            continue
    return None


def capture_date(raw_metadata: RawMetadata | None, image_path: Path) -> datetime | None:
    """
    Pick the capture date: DateTimeOriginal, CreateDate, ModifyDate, then file mtime.
    """
    if raw_metadata is not None:
        for value in (
            raw_metadata.date_time_original,
            raw_metadata.create_date,
            raw_metadata.modify_date,
        ):
            if parsed := parse_exif_datetime(value):
                return parsed

    try:
        mtime = image_path.stat().st_mtime
    except OSError as exc:
        logger.warning("capture_date_unavailable", error=str(exc))
        return None
    logger.debug("using_file_date_as_fallback")
    return datetime.fromtimestamp(mtime, tz=UTC).astimezone()


def sanitize_description(description: str) -> str:
    """
    Make a model-written description safe to use as a filename stem.

    Examples:
        >>> sanitize_description("Golden Retriever, on the Beach!.jpg")
        'golden_retriever_on_the_beach'

    """
    text = _TRAILING_IMAGE_EXT_RE.sub("", description.strip())
    text = re.sub(r"[^a-zA-Z0-9_\-\s]", "", text)
    text = re.sub(r"\s+", "_", text).lower()
    text = re.sub(r"_+", "_", text)[:MAX_DESCRIPTION_LENGTH]
    return text.strip("_-")


def fallback_description(timestamp_ms: int | None = None) -> str:
    """
    Stand-in description used when the description service fails.

    Examples:
        >>> fallback_description(1700000000000)
        'processed_1700000000000'

    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    return f"{FALLBACK_PREFIX}_{timestamp_ms}"


def assemble_filename(
    date_token: str | None,
    names: Sequence[str],
    description: str,
    extension: str,
) -> str:
    """
    Build the final filename from its cues, in order: date, people, description.

    Args:
        date_token: 'YYYY_MM_DD', or None when no date is known
        names: Normalized person tokens, joined with '_and_'
        description: Scene description (sanitized here)
        extension: Original file extension, with or without the leading dot

    Examples:
        >>> assemble_filename("2023_07_04", ["mom", "dad"], "beach picnic", ".JPG")
        '2023_07_04_mom_and_dad_beach_picnic.jpg'
        >>> assemble_filename(None, [], "", "png")
        'image.png'

    """
    parts: list[str] = []
    if date_token:
        parts.append(date_token)
    if tokens := [n for n in names if n]:
        parts.append(PEOPLE_SEPARATOR.join(tokens))
    if slug := sanitize_description(description):
        parts.append(slug)

    stem = "_".join(parts) or "image"
    suffix = extension.lower().lstrip(".")
    suffix = re.sub(r"[^a-z0-9]", "", suffix)
    return f"{stem}.{suffix}" if suffix else stem


SIDECAR_SUFFIX = ".xmp"


def _taken(candidate: Path, reserved: set[str]) -> bool:
    sidecar = candidate.with_suffix(SIDECAR_SUFFIX)
    return any(p.exists() or str(p) in reserved for p in (candidate, sidecar))


def unique_target(directory: Path, filename: str, reserved: set[str]) -> Path:
    """
    Return a path in directory that is neither taken nor reserved, adding _2, _3...

    A name counts as taken when the file or its .xmp sidecar exists, so renaming a
    photo together with its sidecar never replaces another photo's files. The chosen
    name and its sidecar are added to reserved.
    """
    candidate = directory / filename
    stem, suffix = candidate.stem, candidate.suffix
    counter = 2
    while _taken(candidate, reserved):
        candidate = directory / f"{stem}_{counter}{suffix}"
        counter += 1
    reserved.update({str(candidate), str(candidate.with_suffix(SIDECAR_SUFFIX))})
    return candidate
