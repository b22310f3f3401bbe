#!/usr/bin/env python3
"""
Photo Renamer: CLI app to give photos descriptive filenames using AI.

Filenames combine three cues: the capture date, the people in the photo and a short
scene description, e.g. 2023_07_04_mom_and_dad_beach_picnic.jpg.

People come from tags already embedded in the file (Windows Photo Gallery, Lightroom/MWG
regions, IPTC PersonInImage). Only when a photo carries no people tags is the
vision-language model asked to recognize people from your known-people list.

By default the rename plan is only printed. Pass --apply to rename the files.

Requirements:
 - Exiftool installed and available in PATH.
 - Ollama or LM Studio server running and containing a vision-language model.

"""
# ruff: noqa: PLR0913

import contextlib
import functools
import os
import sys
import urllib.parse
from datetime import UTC, datetime
from http import HTTPStatus
from itertools import chain
from pathlib import Path
from typing import Annotated, Any, Literal

import httpx
from cyclopts import App, Parameter, validators
from loguru import logger
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from photo_renamer.describe import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DESCRIPTION_SYSTEM_PROMPT,
    SceneDescription,
    describe_scene,
    prepare_image,
)
from photo_renamer.models import LifecycleState, PipelineRecord
from photo_renamer.naming import SIDECAR_SUFFIX, unique_target
from photo_renamer.people import (
    DETECTION_SYSTEM_PROMPT,
    DetectionReport,
    KnownPeopleRepository,
    KnownPeopleStore,
    PeopleDetector,
)
from photo_renamer.scheduler import (
    DEFAULT_CONCURRENCY,
    BatchScheduler,
    PhotoPipeline,
    ResultsStore,
    new_record,
)


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
ProviderName = Literal["ollama", "lmstudio"]

# Configuration defaults
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "qwen/qwen3-vl-30b")
DEFAULT_RETRIES = int(os.getenv("RETRIES", "2"))
DEFAULT_WORKERS = int(os.getenv("CONCURRENCY", str(DEFAULT_CONCURRENCY)))
DEFAULT_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60"))
DEFAULT_KNOWN_PEOPLE_FILE = Path(
    os.getenv("KNOWN_PEOPLE_FILE", str(Path.home() / ".config" / "photo-renamer" / "people.json")),
)
DEFAULT_EXTENSIONS = "jpg,jpeg,png,heic,tif,tiff,cr3,cr2,nef,arw,dng"
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="photo-renamer",
    version=__version__,
)
people_app = App(name="people", help="Manage the known-people list used for AI detection.")
app.command(people_app)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_renamer.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{thread.name:<14} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
            enqueue=True,
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        logger.error("lmstudio_model_listing_invalid_url", url=url)
        raise SystemExit(1)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_model_listing_error", error=str(exc), url=url)
        raise SystemExit(1) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_model_listing_invalid_json", error=str(exc), url=url)
        raise SystemExit(1) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        logger.error("lmstudio_model_not_available", requested=model_name, available=models)
        raise SystemExit(1)

    logger.debug("lmstudio_model_validated", model=model_name)


def _create_provider(
    provider_name: ProviderName,
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
) -> OllamaProvider | OpenAIProvider:
    resolved_url = api_base_url or PROVIDER_URLS.get(provider_name, DEFAULT_OLLAMA_BASE_URL)
    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
    )
    if provider_name == "ollama":
        return OllamaProvider(base_url=resolved_url, api_key=api_key or DEFAULT_OLLAMA_API_KEY)

    resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
    _validate_lmstudio_model(resolved_url, model_name, resolved_api_key)
    return OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)


def _create_agent(
    provider: OllamaProvider | OpenAIProvider,
    model_name: str,
    *,
    system_prompt: str,
    output_type: type[BaseModel],
    retries: int,
) -> Agent:
    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=output_type,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=system_prompt,
    )


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a set like {".cr3", ".jpg"}.

    Examples:
        >>> _parse_extensions("cr3, jpg ,PNG")
        {'.cr3', '.jpg', '.png'}

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve_image_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of files.

    - Directories are expanded by extension, case-insensitively (honoring --recursive)
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicates removed
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError, RuntimeError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            files_from_dirs.extend(
                sorted(
                    f
                    for f in path_resolved.glob(pattern)
                    if f.is_file() and f.suffix.lower() in ext_set
                ),
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f.resolve()) if f.exists() else str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined


def _resolve_image_batch(
    inputs: list[Path] | None,
    image_extensions: str,
    *,
    recursive: bool,
) -> list[Path]:
    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)
    logger.debug("parsed_extensions", extensions=sorted(ext_set))

    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint="Pass one or more --input/-i paths (files or directories)",
        )
        raise SystemExit(1)

    image_files = _resolve_image_files(inputs, ext_set, recursive=recursive)
    if not image_files:
        logger.error(
            "no_image_files_found",
            inputs=[str(p) for p in inputs],
            recursive=recursive,
            extensions=sorted(ext_set),
        )
        raise SystemExit(1)

    logger.info("image_files_discovered", count=len(image_files))
    return image_files


def _log_progress(record: PipelineRecord) -> None:
    """Observer for the results store: one line per stage change."""
    with logger.contextualize(file=record.original_name):
        if record.state is LifecycleState.FAILED:
            logger.error("photo_failed", error=record.error)
        else:
            logger.debug(
                "photo_progress",
                state=record.state.value,
                tags_extracted=record.tags_extracted,
                people_detected=record.people_detected,
                processed=record.processed,
            )


def _rename_with_sidecar(source: Path, target: Path) -> None:
    """
    Rename a photo and its adjacent .xmp sidecar, if any.

    If the sidecar cannot be moved the photo is moved back, so the pair stays together.

    Raises:
        OSError: if either rename fails.

    """
    sidecar = source.with_suffix(SIDECAR_SUFFIX)
    has_sidecar = sidecar.exists() and sidecar != source
    source.rename(target)
    if not has_sidecar:
        return
    try:
        sidecar.rename(target.with_suffix(SIDECAR_SUFFIX))
    except OSError:
        logger.warning("sidecar_rename_failed_rolling_back", file=str(source))
        target.rename(source)
        raise


def apply_renames(store: ResultsStore, *, dry_run: bool) -> int:
    """
    Print (and unless dry_run, perform) the rename plan for finished photos.

    An adjacent .xmp sidecar is renamed along with its photo. Existing files, sidecars
    included, are never overwritten: a numeric suffix is added instead.

    Returns:
        Number of photos renamed (or that would be renamed).

    """
    reserved: set[str] = set()
    renamed = 0
    for record in sorted(store.snapshot().values(), key=lambda r: str(r.path)):
        if record.state is not LifecycleState.DONE or not record.suggested_name:
            continue
        if record.suggested_name == record.original_name:
            continue
        target = unique_target(record.path.parent, record.suggested_name, reserved)
        print(f"{record.path} -> {target.name}")  # noqa: T201
        if dry_run:
            renamed += 1
            continue
        try:
            _rename_with_sidecar(record.path, target)
        except OSError as exc:
            logger.error("rename_failed", file=str(record.path), error=str(exc))
            continue
        renamed += 1
        logger.info("file_renamed", source=record.original_name, target=target.name)
    return renamed


@app.default
def rename(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to process (case insensitive)",
        ),
    ] = DEFAULT_EXTENSIONS,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    apply: Annotated[
        bool,
        Parameter(
            name=("--apply",),
            negative="--dry-run",
            help="Rename files on disk (default: only print the rename plan)",
        ),
    ] = False,
    concurrency: Annotated[
        int,
        Parameter(
            name=("--concurrency", "-j"),
            validator=validators.Number(gte=1),
            help="Number of photos processed at the same time",
        ),
    ] = DEFAULT_WORKERS,
    model_name: Annotated[
        str,
        Parameter(name=("--model", "-m"), help="Vision-language model name"),
    ] = DEFAULT_MODEL_NAME,
    provider_name: Annotated[
        ProviderName,
        Parameter(name=("--provider",), help="Backend provider: 'ollama' or 'lmstudio'"),
    ] = "lmstudio",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    known_people_file: Annotated[
        Path,
        Parameter(
            name=("--known-people",),
            help="JSON file with the known people the model may recognize",
        ),
    ] = DEFAULT_KNOWN_PEOPLE_FILE,
    timeout: Annotated[
        float,
        Parameter(name=("--timeout",), help="Timeout in seconds for each model request"),
    ] = DEFAULT_TIMEOUT,
    temperature: Annotated[
        float,
        Parameter(name=("--temperature",), help="Sampling temperature (0.0-1.0)"),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(name=("--max-tokens",), help="Maximum tokens for the description"),
    ] = DEFAULT_MAX_TOKENS,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    retries: Annotated[
        int,
        Parameter(name=("--retries",), help="Number of automatic output validation retries"),
    ] = DEFAULT_RETRIES,
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """
    Suggest (and optionally apply) descriptive filenames for photos.

    Inputs:
    - One or more --input/-i paths (files and/or directories; repeatable).
    - Files are processed as is. Directories use --ext (add --recursive for subfolders).

    Behavior:
    - Photos whose name already looks descriptive are left alone.
    - Embedded people tags are used when present; otherwise the model is asked to
        recognize people from the --known-people list (high/medium confidence only).
    - The model describes the scene; if that fails a fallback name is used.
    - Up to --concurrency photos are processed at the same time.

    Exit status: returns 1 if no inputs, no images found, a photo failed or the run was
    interrupted.

    Examples:
        photo-renamer -i ./photos
        photo-renamer -i ./photos --ext jpg,heic -r --apply
        photo-renamer people add "Mom" --description "short grey hair, glasses"

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_photo_renamer",
        inputs=[str(p) for p in (inputs or [])],
        extensions=image_extensions,
        model=model_name,
        provider=provider_name,
        api_base_url=api_base_url,
        api_key_present=bool(api_key),
        recursive=recursive,
        apply=apply,
        concurrency=concurrency,
        known_people_file=str(known_people_file),
        timeout=timeout,
    )

    image_files = _resolve_image_batch(inputs, image_extensions, recursive=recursive)

    provider = _create_provider(
        provider_name,
        model_name,
        api_base_url=api_base_url,
        api_key=api_key,
    )
    detector = PeopleDetector(
        _create_agent(
            provider,
            model_name,
            system_prompt=DETECTION_SYSTEM_PROMPT,
            output_type=DetectionReport,
            retries=retries,
        ),
        temperature=temperature,
        timeout=timeout,
    )
    description_agent = _create_agent(
        provider,
        model_name,
        system_prompt=DESCRIPTION_SYSTEM_PROMPT,
        output_type=SceneDescription,
        retries=retries,
    )

    pipeline = PhotoPipeline(
        detect=detector.detect,
        describe=functools.partial(
            describe_scene,
            agent=description_agent,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        ),
        known_people=KnownPeopleRepository(KnownPeopleStore(known_people_file)),
        load_image=functools.partial(
            prepare_image,
            jpg_quality=jpeg_quality,
            max_size=jpeg_dimensions,
        ),
    )
    scheduler = BatchScheduler(
        pipeline,
        concurrency=concurrency,
        store=ResultsStore(on_update=_log_progress),
    )
    store = scheduler.run([new_record(path) for path in image_files])

    renamed = apply_renames(store, dry_run=not apply)

    records = store.snapshot().values()
    counts: dict[str, Any] = {
        "total_files": len(image_files),
        "done": sum(r.state is LifecycleState.DONE for r in records),
        "failed": sum(r.state is LifecycleState.FAILED for r in records),
        "skipped_already_renamed": sum(r.already_renamed for r in records),
        "fallback_descriptions": sum(r.used_fallback_description for r in records),
        "not_started": sum(r.state is LifecycleState.QUEUED for r in records),
        "renamed" if apply else "would_rename": renamed,
    }
    logger.info("processing_summary", **counts)

    if counts["failed"] or counts["not_started"] or scheduler.cancelled:
        raise SystemExit(1)


def _known_people(known_people_file: Path) -> KnownPeopleRepository:
    setup_logging(file_log_level="OFF", console_log_level="WARNING")
    return KnownPeopleRepository(KnownPeopleStore(known_people_file))


@people_app.command(name="list")
def list_people(
    *,
    known_people_file: Annotated[
        Path,
        Parameter(name=("--known-people",), help="JSON file with the known people"),
    ] = DEFAULT_KNOWN_PEOPLE_FILE,
) -> None:
    """List known people."""
    for person in _known_people(known_people_file).list_people():
        aliases = f" ({', '.join(person.aliases)})" if person.aliases else ""
        print(f"{person.id}  {person.name}{aliases}  {person.description}")  # noqa: T201


@people_app.command(name="add")
def add_person(
    name: str,
    *,
    description: Annotated[
        str,
        Parameter(name=("--description", "-d"), help="Physical description to help the model"),
    ] = "",
    aliases: Annotated[
        list[str] | None,
        Parameter(name=("--alias", "-a"), help="Alternative name (repeat this option)"),
    ] = None,
    known_people_file: Annotated[
        Path,
        Parameter(name=("--known-people",), help="JSON file with the known people"),
    ] = DEFAULT_KNOWN_PEOPLE_FILE,
) -> None:
    """Add a person the model may recognize."""
    person_id = _known_people(known_people_file).add(name, description, aliases or [])
    print(person_id)  # noqa: T201


@people_app.command(name="remove")
def remove_person(
    person_id: str,
    *,
    known_people_file: Annotated[
        Path,
        Parameter(name=("--known-people",), help="JSON file with the known people"),
    ] = DEFAULT_KNOWN_PEOPLE_FILE,
) -> None:
    """Remove a known person by id."""
    if not _known_people(known_people_file).remove(person_id):
        logger.error("known_person_not_found", id=person_id)
        raise SystemExit(1)


if __name__ == "__main__":
    app()
