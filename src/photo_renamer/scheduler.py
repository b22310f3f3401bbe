"""
Batch pipeline: a fixed pool of worker threads renaming photos concurrently.

Each worker claims photo ids from one shared queue and runs the whole per-photo
pipeline (extract, optionally detect, describe, assemble), publishing the record
after every stage so observers can follow progress.
"""

import queue
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from loguru import logger
from pydantic_ai import BinaryContent

from photo_renamer.describe import prepare_image
from photo_renamer.metadata import extract, read_photo_metadata
from photo_renamer.models import (
    TERMINAL_STATES,
    DetectedPerson,
    KnownPerson,
    LifecycleState,
    PipelineRecord,
    RawMetadata,
)
from photo_renamer.naming import (
    assemble_filename,
    capture_date,
    fallback_description,
    format_date_token,
    looks_already_renamed,
    sanitize_description,
)
from photo_renamer.people import KnownPeopleRepository, resolve


DEFAULT_CONCURRENCY = 3

Publish = Callable[[PipelineRecord], None]
DetectService = Callable[[BinaryContent | None, Sequence[KnownPerson]], Sequence[DetectedPerson]]
DescribeService = Callable[[BinaryContent], str]


def new_record(image_path: Path, photo_id: str | None = None) -> PipelineRecord:
    """Create a queued record, flagging files that already look renamed."""
    return PipelineRecord(
        id=photo_id or str(image_path),
        path=image_path,
        original_name=image_path.name,
        already_renamed=looks_already_renamed(image_path.name),
    )


class ResultsStore:
    """
    Thread-safe mapping of photo id to the latest published record.

    Records are copied on the way in and on the way out, so a reader never sees a
    record the owning worker is still changing.
    """

    def __init__(self, on_update: Publish | None = None) -> None:
        self._records: dict[str, PipelineRecord] = {}
        self._lock = threading.Lock()
        self._on_update = on_update

    def publish(self, record: PipelineRecord) -> None:
        published = record.model_copy(deep=True)
        with self._lock:
            self._records[record.id] = published
        if self._on_update is not None:
            try:
                self._on_update(published.model_copy(deep=True))
            except Exception as exc:  # noqa: BLE001
                logger.warning("results_observer_failed", photo_id=record.id, error=str(exc))

    def get(self, photo_id: str) -> PipelineRecord | None:
        with self._lock:
            record = self._records.get(photo_id)
        return record.model_copy(deep=True) if record else None

    def snapshot(self) -> dict[str, PipelineRecord]:
        with self._lock:
            records = list(self._records.values())
        return {r.id: r.model_copy(deep=True) for r in records}

    def terminal_ids(self) -> list[str]:
        with self._lock:
            return [r.id for r in self._records.values() if r.state in TERMINAL_STATES]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class PhotoPipeline:
    """
    The per-photo pipeline.

    Every collaborator is injected. External calls degrade instead of failing:
    a detection error means no detected people, a description error means a
    fallback description.
    """

    def __init__(
        self,
        *,
        detect: DetectService,
        describe: DescribeService,
        known_people: KnownPeopleRepository | None = None,
        read_metadata: Callable[[Path], RawMetadata | None] = read_photo_metadata,
        load_image: Callable[[Path], BinaryContent] = prepare_image,
    ) -> None:
        self.detect = detect
        self.describe = describe
        self.known_people = known_people if known_people is not None else KnownPeopleRepository()
        self.read_metadata = read_metadata
        self.load_image = load_image

    def run(self, record: PipelineRecord, publish: Publish) -> None:
        """Advance record from queued to done, publishing after every stage."""
        if record.already_renamed:
            logger.info("skipping_already_renamed")
            record.suggested_name = record.original_name
            record.advance(LifecycleState.DONE)
            publish(record)
            return

        # Stage 1: embedded tags
        record.advance(LifecycleState.EXTRACTING_TAGS)
        publish(record)
        record.raw_metadata = self.read_metadata(record.path)
        record.extraction = extract(record.raw_metadata)
        record.capture_date = capture_date(record.raw_metadata, record.path)
        record.tags_extracted = True
        publish(record)

        image = self._load_image(record.path)

        # Stage 2: people, detection only if nobody is tagged
        def detect_fn() -> list[DetectedPerson]:
            record.detection_invoked = True
            record.advance(LifecycleState.DETECTING_PEOPLE)
            publish(record)
            record.detections = list(self.detect(image, self.known_people.list_people()))
            return record.detections

        try:
            record.resolved_names = resolve(record.extraction, detect_fn)
        except Exception as exc:  # noqa: BLE001
            logger.error("people_detection_error", error=str(exc))
            record.resolved_names = []

        # Stage 3: description
        record.advance(LifecycleState.DESCRIBING_SCENE)
        publish(record)
        try:
            if image is None:
                msg = "image could not be prepared"
                raise ValueError(msg)  # noqa: TRY301
            description = self.describe(image)
            if not sanitize_description(description):
                msg = f"description {description!r} has no usable characters"
                raise ValueError(msg)  # noqa: TRY301
            record.description = description
        except Exception as exc:  # noqa: BLE001
            record.description = fallback_description()
            record.used_fallback_description = True
            logger.warning(
                "description_failed_using_fallback",
                error=str(exc),
                fallback=record.description,
            )
        publish(record)

        # Stage 4: filename
        record.advance(LifecycleState.ASSEMBLING_NAME)
        publish(record)
        record.suggested_name = assemble_filename(
            format_date_token(record.capture_date) if record.capture_date else None,
            record.resolved_names,
            record.description,
            record.path.suffix,
        )
        record.advance(LifecycleState.DONE)
        publish(record)
        logger.info("photo_processed", suggested_name=record.suggested_name)

    def _load_image(self, image_path: Path) -> BinaryContent | None:
        try:
            return self.load_image(image_path)
        except Exception as exc:  # noqa: BLE001
            logger.error("image_preparation_failed", error=str(exc))
            return None


class BatchScheduler:
    """
    Run a PhotoPipeline over many records with a fixed number of worker threads.

    Claiming goes through a queue.Queue, so no id is processed twice. run() returns
    only once every worker has drained the queue (or stopped after cancel()).
    """

    def __init__(
        self,
        pipeline: PhotoPipeline,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        store: ResultsStore | None = None,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be at least 1, got {concurrency}"
            raise ValueError(msg)
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.store = store if store is not None else ResultsStore()
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop claiming new photos. Photos already in flight still finish."""
        logger.warning("batch_cancel_requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, records: Sequence[PipelineRecord]) -> ResultsStore:
        owned: dict[str, PipelineRecord] = {}
        pending: queue.Queue[str] = queue.Queue()
        for record in records:
            if record.id in owned:
                logger.warning("duplicate_photo_id_ignored", photo_id=record.id)
                continue
            owned[record.id] = record.model_copy(deep=True)
            self.store.publish(owned[record.id])
            if record.state not in TERMINAL_STATES:
                pending.put(record.id)

        worker_count = min(self.concurrency, pending.qsize())
        logger.info("batch_started", photos=pending.qsize(), workers=worker_count)
        workers = [
            threading.Thread(
                target=self._worker_loop,
                args=(pending, owned),
                name=f"RenameWorker-{n}",
                daemon=True,
            )
            for n in range(1, worker_count + 1)
        ]
        for worker in workers:
            worker.start()
        try:
            for worker in workers:
                worker.join()
        except KeyboardInterrupt:
            self.cancel()
            for worker in workers:
                worker.join()

        terminal = self.store.terminal_ids()
        logger.info(
            "batch_finished",
            total=len(owned),
            terminal=len(terminal),
            cancelled=self.cancelled,
        )
        return self.store

    def _worker_loop(self, pending: queue.Queue[str], records: dict[str, PipelineRecord]) -> None:
        while not self._cancelled.is_set():
            try:
                photo_id = pending.get_nowait()
            except queue.Empty:
                break
            record = records[photo_id]
            with logger.contextualize(file=record.original_name, photo_id=photo_id):
                try:
                    self.pipeline.run(record, self.store.publish)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("photo_pipeline_failed", error=str(exc))
                    record.error = str(exc)
                    if record.state not in TERMINAL_STATES:
                        record.advance(LifecycleState.FAILED)
                    self.store.publish(record)
