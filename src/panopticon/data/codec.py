"""
JSONL encoding of events.

One event per line: {"id", "type", "timestamp", "version", "payload"} with
camelCase payload keys. Decoding separates two failure classes: a line that
is not a well-formed event is a CorruptRecordError (skippable), while a
well-formed record of a type or version this build does not know is an
UnknownEventError (replay must stop).
"""
import json
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from panopticon.events import EVENT_ADAPTER, EVENT_TYPES, Event
from panopticon.migration import MigrationRegistry
from panopticon.recovery import CorruptRecordError, UnknownEventError
from panopticon.version import EVENT_VERSION

ENVELOPE_KEYS = ("id", "type", "timestamp", "version", "payload")

def encode_event(event: Event) -> str:
    return event.to_json()

def decode_event(raw: bytes, line_number: int = 0, migrations: Optional[MigrationRegistry] = None) -> Event:
    """Decode one log line into an event.

    Raises:
        CorruptRecordError: the line is not a well-formed event record.
        UnknownEventError: the event type or version is not supported.
    """
    preview = raw[:200].decode("utf-8", errors="replace")
    try:
        record = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptRecordError(f"Line {line_number}: not valid JSON: {e}", line_number, preview) from e

    if not isinstance(record, dict):
        raise CorruptRecordError(f"Line {line_number}: expected a JSON object", line_number, preview)
    missing = [key for key in ENVELOPE_KEYS if key not in record]
    if missing:
        raise CorruptRecordError(f"Line {line_number}: missing {', '.join(missing)}", line_number, preview)

    event_type = record["type"]
    version = record["version"]
    if not isinstance(event_type, str) or not isinstance(version, int) or isinstance(version, bool):
        raise CorruptRecordError(f"Line {line_number}: malformed type or version", line_number, preview)
    if not isinstance(record["payload"], dict):
        raise CorruptRecordError(f"Line {line_number}: payload must be an object", line_number, preview)
    if event_type not in EVENT_TYPES:
        raise UnknownEventError(f"Line {line_number}: unknown event type '{event_type}'")

    registry = migrations or MigrationRegistry()
    payload = registry.upgrade(event_type, version, record["payload"])

    try:
        return EVENT_ADAPTER.validate_python({**record, "payload": payload, "version": EVENT_VERSION})
    except PydanticValidationError as e:
        raise CorruptRecordError(f"Line {line_number}: invalid {event_type} record: {e.error_count()} error(s)", line_number, preview) from e
