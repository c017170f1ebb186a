"""Decoding tests for remote payloads."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest
from factories import instance_payload, operation_event, operation_payload

from lxdsync.models import (
    InstanceRecord,
    ModelError,
    OperationEvent,
    OperationRecord,
    StatusCode,
    instance_name_from_resource,
)


def test_status_code_parse_accepts_ints_strings_and_unknowns() -> None:
    """Known codes map to members; anything else becomes UNKNOWN."""
    assert StatusCode.parse(103) is StatusCode.RUNNING
    assert StatusCode.parse("102") is StatusCode.STOPPED
    assert StatusCode.parse("frozen") is StatusCode.FROZEN
    assert StatusCode.parse(999) is StatusCode.UNKNOWN
    assert StatusCode.parse(None) is StatusCode.UNKNOWN
    assert StatusCode.parse(True) is StatusCode.UNKNOWN


def test_status_code_classification() -> None:
    """Only pending/running are active; success/failure/cancelled are settled."""
    assert StatusCode.PENDING.is_active
    assert StatusCode.RUNNING.is_active
    assert not StatusCode.CANCELLING.is_active
    assert {code for code in StatusCode if code.is_settled} == {
        StatusCode.SUCCESS,
        StatusCode.FAILURE,
        StatusCode.CANCELLED,
    }
    assert StatusCode.RESTARTING.label == "restarting"


def test_instance_from_dict_keeps_extra_attributes_read_only() -> None:
    """Everything except name/status_code lands in the attributes mapping."""
    record = InstanceRecord.from_dict(instance_payload("foo", StatusCode.RUNNING))

    assert record.name == "foo"
    assert record.status_code is StatusCode.RUNNING
    assert record.status == "running"
    assert record.attributes["architecture"] == "x86_64"
    assert "name" not in record.attributes
    with pytest.raises(TypeError):
        record.attributes["architecture"] = "arm64"  # type: ignore[index]


def test_instance_with_status_returns_copy() -> None:
    """Overriding the status never mutates the stored record."""
    record = InstanceRecord.from_dict(instance_payload("foo"))

    starting = record.with_status(StatusCode.STARTING)

    assert starting.status_code is StatusCode.STARTING
    assert record.status_code is StatusCode.STOPPED
    assert starting.attributes == record.attributes
    assert record.with_status(StatusCode.STOPPED) is record


def test_instance_to_dict_includes_status_label() -> None:
    """Serialised records expose both the code and its label."""
    data = InstanceRecord.from_dict(instance_payload("foo", StatusCode.FROZEN)).to_dict()

    assert data["name"] == "foo"
    assert data["status"] == "frozen"
    assert data["status_code"] == 110


@pytest.mark.parametrize("payload", [{}, {"name": ""}, {"name": 5}, ["foo"]])
def test_instance_from_dict_rejects_missing_name(payload: object) -> None:
    """A payload without a usable name cannot be decoded."""
    with pytest.raises(ModelError):
        InstanceRecord.from_dict(payload)  # type: ignore[arg-type]


def test_operation_from_dict_extracts_instance_names() -> None:
    """Resource URLs are reduced to unique instance names in order."""
    payload = operation_payload(
        "op-1",
        description="Starting instance",
        status_code=StatusCode.RUNNING,
        instances=["foo", "bar"],
    )
    payload["resources"]["instances"].append("/1.0/instances/foo?project=default")

    operation = OperationRecord.from_dict(payload)

    assert operation.id == "op-1"
    assert operation.status_code is StatusCode.RUNNING
    assert operation.description == "Starting instance"
    assert operation.instances == ("foo", "bar")
    assert operation.type == "task"
    assert operation.is_active and not operation.is_settled
    assert operation.created_at == datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=UTC)


def test_operation_from_dict_tolerates_missing_resources() -> None:
    """Operations without instance resources touch nothing."""
    payload = operation_payload("op-2")
    payload["resources"] = None

    assert OperationRecord.from_dict(payload).instances == ()


def test_operation_from_dict_requires_id() -> None:
    """The operation id is mandatory."""
    payload = operation_payload()
    del payload["id"]

    with pytest.raises(ModelError):
        OperationRecord.from_dict(payload)


def test_event_from_dict_embeds_operation() -> None:
    """Operation events decode their metadata into an OperationRecord."""
    event = OperationEvent.from_dict(operation_event(operation_payload("op", instances=["foo"])))

    assert event.type == "operation"
    assert event.operation is not None
    assert event.operation.instances == ("foo",)
    assert event.timestamp is not None


def test_event_from_dict_ignores_metadata_of_other_types() -> None:
    """Non-operation events carry no OperationRecord."""
    event = OperationEvent.from_dict({"type": "logging", "metadata": {"message": "hi"}})

    assert event.operation is None
    assert event.metadata["message"] == "hi"


def test_event_from_dict_rejects_bad_metadata() -> None:
    """Metadata must be a mapping."""
    with pytest.raises(ModelError):
        OperationEvent.from_dict({"type": "operation", "metadata": ["nope"]})


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("foo", "foo"),
        ("/1.0/instances/foo", "foo"),
        ("/1.0/instances/foo?project=p1", "foo"),
        ("/1.0/instances/foo/snapshots/snap0", "foo"),
        ("", None),
        (None, None),
    ],
)
def test_instance_name_from_resource(value: object, expected: str | None) -> None:
    """Bare names and instance URLs both resolve to the instance name."""
    assert instance_name_from_resource(value) == expected
