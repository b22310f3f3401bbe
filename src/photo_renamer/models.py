"""Data models shared by the extractor, resolver and batch scheduler."""

from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


SchemaName = Literal["microsoft", "mwg", "iptc"]
ConfidenceTier = Literal["high", "medium", "low"]


class PhotoRenamerError(Exception):
    """Base class for errors raised by photo_renamer."""


class InvalidTransitionError(PhotoRenamerError):
    """Raised when a pipeline record is asked to move backwards or leave a terminal state."""


class BoundingBox(BaseModel):
    """Rectangle normalized to image width/height."""

    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)
    width: float = Field(ge=0, le=1)
    height: float = Field(ge=0, le=1)


class PersonTag(BaseModel):
    """A person found in embedded metadata."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    bounding_box: BoundingBox | None = None
    schema_name: SchemaName = Field(alias="schema")


class RawMetadata(BaseModel):
    """Raw metadata blob read from a photo (and its sidecar, if any)."""

    xmp: str | None = None
    software: str | None = None
    processing_software: str | None = None
    date_time_original: str | None = None
    create_date: str | None = None
    modify_date: str | None = None


class ExtractionResult(BaseModel):
    """People tags merged across all schemas, first-seen order."""

    people: list[PersonTag] = Field(default_factory=list)
    tagging_software: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_embedded_tags(self) -> bool:
        return len(self.people) > 0


class DetectedPerson(BaseModel):
    """Person identity returned by the external detection service."""

    name: str
    confidence: ConfidenceTier
    description: str | None = None


class KnownPerson(BaseModel):
    """Hint passed to the detection service so it can put names to faces."""

    id: str
    name: str
    description: str = ""
    aliases: list[str] = Field(default_factory=list)


class LifecycleState(StrEnum):
    QUEUED = "queued"
    EXTRACTING_TAGS = "extracting_tags"
    DETECTING_PEOPLE = "detecting_people"
    DESCRIBING_SCENE = "describing_scene"
    ASSEMBLING_NAME = "assembling_name"
    DONE = "done"
    FAILED = "failed"


_STATE_ORDER = {
    LifecycleState.QUEUED: 0,
    LifecycleState.EXTRACTING_TAGS: 1,
    LifecycleState.DETECTING_PEOPLE: 2,
    LifecycleState.DESCRIBING_SCENE: 3,
    LifecycleState.ASSEMBLING_NAME: 4,
    LifecycleState.DONE: 5,
}
TERMINAL_STATES = frozenset({LifecycleState.DONE, LifecycleState.FAILED})


class PipelineRecord(BaseModel):
    """
    Per-photo working state.

    A record is owned by the worker processing it. Observers only ever receive
    copies published through the results store.
    """

    id: str
    path: Path
    original_name: str
    state: LifecycleState = LifecycleState.QUEUED
    raw_metadata: RawMetadata | None = None
    extraction: ExtractionResult = Field(default_factory=ExtractionResult)
    tags_extracted: bool = False
    detection_invoked: bool = False
    detections: list[DetectedPerson] = Field(default_factory=list)
    resolved_names: list[str] = Field(default_factory=list)
    capture_date: datetime | None = None
    description: str | None = None
    used_fallback_description: bool = False
    suggested_name: str | None = None
    already_renamed: bool = False
    error: str | None = None

    @property
    def people_detected(self) -> bool:
        """True once the detection service has been called and answered for this photo."""
        return self.detection_invoked and self.state is not LifecycleState.DETECTING_PEOPLE

    @property
    def processed(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: LifecycleState) -> None:
        """
        Move the record forward.

        Raises:
            InvalidTransitionError: if the record is terminal or new_state is not later.

        """
        if self.state in TERMINAL_STATES:
            msg = f"record {self.id} is already {self.state.value}"
            raise InvalidTransitionError(msg)
        if new_state is LifecycleState.FAILED:
            self.state = new_state
            return
        if _STATE_ORDER[new_state] <= _STATE_ORDER[self.state]:
            msg = f"cannot move record {self.id} from {self.state.value} to {new_state.value}"
            raise InvalidTransitionError(msg)
        self.state = new_state
