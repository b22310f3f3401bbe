"""
Decide who is in a photo.

Embedded tags always win. Only when a photo carries none is the external detection
service asked, and only its high and medium confidence answers are kept.
"""

import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings

from photo_renamer.metadata import normalize_name
from photo_renamer.models import DetectedPerson, ExtractionResult, KnownPerson


DetectFn = Callable[[], Sequence[DetectedPerson]]
ACCEPTED_CONFIDENCE = frozenset({"high", "medium"})

DETECTION_SYSTEM_PROMPT = (
    "You identify people in photographs for a photo archive. "
    "You only name people from the list of known people you are given, matching them by the "
    "physical description and aliases provided. Never invent names. "
    "For every known person you believe is visible, report their name exactly as listed and a "
    "confidence of 'high', 'medium' or 'low'. If nobody from the list is visible, return an "
    "empty list."
)


def _unique_tokens(names: Iterable[str]) -> list[str]:
    """
    Normalize names into filename tokens, dropping empties and repeats.

    Examples:
        >>> _unique_tokens(["Ann Lee", "ann  lee", "!!", "Bo"])
        ['ann_lee', 'bo']

    """
    tokens: list[str] = []
    for name in names:
        token = normalize_name(name)
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def select_detected_names(detections: Sequence[DetectedPerson]) -> list[str]:
    """Keep high/medium confidence detections, in detector order, as name tokens."""
    accepted = [d.name for d in detections if d.confidence in ACCEPTED_CONFIDENCE]
    dropped = len(detections) - len(accepted)
    if dropped:
        logger.debug("low_confidence_detections_dropped", count=dropped)
    return _unique_tokens(accepted)


def resolve(extraction: ExtractionResult, detect_fn: DetectFn) -> list[str]:
    """
    Choose the people names used in a photo's filename.

    Args:
        extraction: People found in embedded metadata.
        detect_fn: Calls the external detection service. Invoked at most once, and only when
            the extraction found nobody.

    Returns:
        Ordered, normalized, non-empty name tokens.

    Raises:
        Whatever detect_fn raises. Callers degrade that to an empty list.

    """
    if extraction.people:
        names = _unique_tokens(person.name for person in extraction.people)
        logger.info("using_embedded_people", names=names)
        return names

    logger.info("no_embedded_people_using_detection")
    names = select_detected_names(detect_fn())
    if names:
        logger.info("using_detected_people", names=names)
    return names


class KnownPeopleStore:
    """JSON-file persistence for the known-people list."""

    _adapter = TypeAdapter(list[KnownPerson])

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[KnownPerson]:
        if not self.path.exists():
            return []
        try:
            people = self._adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.error("known_people_load_failed", file=str(self.path), error=str(exc))
            return []
        logger.debug("known_people_loaded", count=len(people), file=str(self.path))
        return people

    def save(self, people: list[KnownPerson]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(self._adapter.dump_json(people, indent=2))
        except OSError as exc:
            logger.error("known_people_save_failed", file=str(self.path), error=str(exc))
            return
        logger.debug("known_people_saved", count=len(people), file=str(self.path))


class KnownPeopleRepository:
    """
    The people the detection service may recognize.

    Every change is written through to the store, when one is given.
    """

    def __init__(self, store: KnownPeopleStore | None = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._people: list[KnownPerson] = store.load() if store else []

    def list_people(self) -> list[KnownPerson]:
        with self._lock:
            return [p.model_copy() for p in self._people]

    def add(self, name: str, description: str = "", aliases: Sequence[str] = ()) -> str:
        person = KnownPerson(
            id=uuid.uuid4().hex[:12],
            name=name.strip(),
            description=description.strip(),
            aliases=[a.strip() for a in aliases if a.strip()],
        )
        with self._lock:
            self._people.append(person)
            self._persist()
        logger.info("known_person_added", id=person.id, name=person.name)
        return person.id

    def update(
        self,
        person_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        aliases: Sequence[str] | None = None,
    ) -> bool:
        with self._lock:
            person = next((p for p in self._people if p.id == person_id), None)
            if person is None:
                return False
            if name is not None:
                person.name = name.strip()
            if description is not None:
                person.description = description.strip()
            if aliases is not None:
                person.aliases = [a.strip() for a in aliases if a.strip()]
            self._persist()
        logger.info("known_person_updated", id=person_id)
        return True

    def remove(self, person_id: str) -> bool:
        with self._lock:
            remaining = [p for p in self._people if p.id != person_id]
            if len(remaining) == len(self._people):
                return False
            self._people = remaining
            self._persist()
        logger.info("known_person_removed", id=person_id)
        return True

    def clear(self) -> None:
        with self._lock:
            self._people = []
            self._persist()
        logger.info("known_people_cleared")

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._people)


class DetectionReport(BaseModel):
    """Schema for the detection agent's structured output."""

    people: list[DetectedPerson] = Field(default_factory=list)


def build_detection_prompt(known_people: Sequence[KnownPerson]) -> str:
    """
    Describe the known people to the model.

    Examples:
        >>> print(build_detection_prompt([KnownPerson(id="1", name="Ann", aliases=["Annie"])]))
        Which of these known people appear in this photo?
        - Ann (also known as: Annie)

    """
    lines = ["Which of these known people appear in this photo?"]
    for person in known_people:
        line = f"- {person.name}"
        if person.aliases:
            line += f" (also known as: {', '.join(person.aliases)})"
        if person.description:
            line += f": {person.description}"
        lines.append(line)
    return "\n".join(lines)


class PeopleDetector:
    """Client for the external people detection service (a vision-language model)."""

    def __init__(
        self,
        agent: Agent,
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
        timeout: float | None = None,
    ) -> None:
        self.agent = agent
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def detect(
        self,
        image: BinaryContent | None,
        known_people: Sequence[KnownPerson],
    ) -> list[DetectedPerson]:
        """
        Ask the model which known people appear in the image.

        Returns:
            Detected people as reported by the model. Any failure (no image, no known
            people, provider error, timeout, invalid output) yields an empty list.

        """
        if image is None:
            logger.warning("people_detection_skipped_no_image")
            return []
        if not known_people:
            logger.info("people_detection_skipped_no_known_people")
            return []

        settings = ModelSettings(temperature=self.temperature, max_tokens=self.max_tokens)
        if self.timeout is not None:
            settings["timeout"] = self.timeout

        logger.info("detecting_people", known_people=len(known_people))
        _t0 = time.perf_counter()
        try:
            result: AgentRunResult[DetectionReport] = self.agent.run_sync(
                [build_detection_prompt(known_people), image],
                model_settings=settings,
                output_type=DetectionReport,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("people_detection_failed", error=str(exc))
            return []

        people = result.output.people
        logger.info(
            "people_detection_completed",
            seconds=round(time.perf_counter() - _t0, 3),
            detected=[f"{p.name} ({p.confidence})" for p in people],
        )
        return people
