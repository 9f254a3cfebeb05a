"""Unit tests for JSONL event decoding and payload migrations."""

import json
import pytest

from panopticon.data.codec import decode_event, encode_event
from panopticon.events import TaskCreated
from panopticon.migration import EventMigration, MigrationRegistry
from panopticon.recovery import CorruptRecordError, MigrationError, UnknownEventError
from panopticon.version import EVENT_VERSION


class PointsRenamed(EventMigration):
    """v0 task_created payloads called the estimate 'points'."""
    EVENT_TYPE = "task_created"
    FROM_VERSION = 0

    def upgrade(self, payload):
        payload["estimatedPoints"] = payload.pop("points")
        return payload


def _record(**overrides):
    record = {
        "id": "e1",
        "type": "task_created",
        "timestamp": "2024-01-01T09:00:00Z",
        "version": EVENT_VERSION,
        "payload": {"taskId": "t1", "milestoneId": "m1", "title": "Build", "estimatedPoints": 3},
    }
    record.update(overrides)
    return json.dumps(record).encode("utf-8")


class TestDecode:
    """Test decoding of single log lines."""

    def test_round_trip(self, factory):
        """Test that an encoded event decodes to an equal event."""
        event = factory.task_created("m1", "Build", estimated_points=3, tags=["x"])
        decoded = decode_event(encode_event(event).encode("utf-8"), 1)
        assert decoded == event

    def test_valid_record(self):
        """Test decoding a hand-written record."""
        event = decode_event(_record(), 1)
        assert isinstance(event, TaskCreated)
        assert event.payload.estimated_points == 3.0

    @pytest.mark.parametrize("raw", [
        b"{not json",
        b"\xff\xfe garbage",
        b"[1, 2, 3]",
        b'{"id": "e1", "type": "task_created"}',
    ])
    def test_corrupt_lines(self, raw):
        """Test lines that are not event records."""
        with pytest.raises(CorruptRecordError) as excinfo:
            decode_event(raw, 7)
        assert excinfo.value.line_number == 7

    def test_malformed_payload_is_corrupt(self):
        """Test a known type whose payload does not validate."""
        with pytest.raises(CorruptRecordError):
            decode_event(_record(payload={"taskId": "t1"}), 2)

    def test_malformed_version_is_corrupt(self):
        """Test a non-integer version."""
        with pytest.raises(CorruptRecordError):
            decode_event(_record(version="one"), 2)

    def test_unknown_type(self):
        """Test that an unknown type is not skippable corruption."""
        with pytest.raises(UnknownEventError):
            decode_event(_record(type="task_exploded"), 3)

    def test_newer_version(self):
        """Test records written by a newer build."""
        with pytest.raises(UnknownEventError):
            decode_event(_record(version=EVENT_VERSION + 1), 3)


class TestMigrations:
    """Test payload upcasting."""

    def test_old_version_without_migration(self):
        """Test that a missing migration step stops decoding."""
        with pytest.raises(UnknownEventError):
            decode_event(_record(version=0), 1)

    def test_old_version_is_upgraded(self):
        """Test that a registered migration upgrades the payload."""
        registry = MigrationRegistry([PointsRenamed()])
        raw = _record(version=0, payload={"taskId": "t1", "milestoneId": "m1", "title": "Build", "points": 8})
        event = decode_event(raw, 1, registry)
        assert event.version == EVENT_VERSION
        assert event.payload.estimated_points == 8.0

    def test_failing_migration(self):
        """Test that a migration error is reported as such."""
        registry = MigrationRegistry([PointsRenamed()])
        raw = _record(version=0, payload={"taskId": "t1", "milestoneId": "m1", "title": "Build"})
        with pytest.raises(MigrationError):
            decode_event(raw, 1, registry)

    def test_duplicate_registration(self):
        """Test that two migrations for the same step are rejected."""
        with pytest.raises(MigrationError):
            MigrationRegistry([PointsRenamed(), PointsRenamed()])
