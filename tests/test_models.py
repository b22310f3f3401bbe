"""Tests for the per-photo lifecycle rules."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from photo_renamer.models import (
    BoundingBox,
    InvalidTransitionError,
    LifecycleState,
    PersonTag,
    PhotoRenamerError,
    PipelineRecord,
)


def _record() -> PipelineRecord:
    return PipelineRecord(id="p1", path=Path("IMG_0001.jpg"), original_name="IMG_0001.jpg")


def test_advance_moves_forward_and_may_skip_detection() -> None:
    record = _record()

    record.advance(LifecycleState.EXTRACTING_TAGS)
    record.advance(LifecycleState.DESCRIBING_SCENE)
    record.advance(LifecycleState.ASSEMBLING_NAME)
    record.advance(LifecycleState.DONE)

    assert record.processed is True


@pytest.mark.parametrize(
    "target",
    [LifecycleState.QUEUED, LifecycleState.EXTRACTING_TAGS],
)
def test_advance_never_goes_backward_or_stays(target: LifecycleState) -> None:
    record = _record()
    record.advance(LifecycleState.EXTRACTING_TAGS)

    with pytest.raises(InvalidTransitionError):
        record.advance(target)


def test_terminal_records_are_frozen() -> None:
    """Done and Failed records accept no further transitions, not even Failed."""
    done = _record()
    done.advance(LifecycleState.DONE)
    failed = _record()
    failed.advance(LifecycleState.FAILED)

    with pytest.raises(InvalidTransitionError):
        done.advance(LifecycleState.FAILED)
    with pytest.raises(PhotoRenamerError):
        failed.advance(LifecycleState.DONE)


def test_people_detected_flips_after_detection_stage() -> None:
    record = _record()
    record.advance(LifecycleState.EXTRACTING_TAGS)
    record.detection_invoked = True
    record.advance(LifecycleState.DETECTING_PEOPLE)
    assert record.people_detected is False

    record.advance(LifecycleState.DESCRIBING_SCENE)
    assert record.people_detected is True


def test_bounding_box_rejects_coordinates_outside_unit_square() -> None:
    with pytest.raises(ValidationError):
        BoundingBox(x=1.5, y=0.0, width=0.5, height=0.5)


def test_person_tag_accepts_schema_alias() -> None:
    tag = PersonTag(name="mom", schema="mwg")

    assert tag.schema_name == "mwg"
    assert tag.model_dump(by_alias=True)["schema"] == "mwg"
