"""
SnapshotStore - periodic materialization of AppState.

A snapshot is only a cache of the log: any problem reading it means the
caller falls back to a full replay, so ``load`` never raises for bad content.
"""
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from panopticon.context import PanopticonContext
from panopticon.models import AppState
from panopticon.recovery import CorruptionError, FileOperationError
from panopticon.version import STATE_VERSION
from .io import DATA_JSON, atomic_write, load_json_file, with_retry

class SnapshotStore:

    def __init__(self, context: PanopticonContext, path: Union[Path, str]):
        self.context = context
        self.path = Path(path)
        self.log = context.get_logger("data.snapshot")

    def save(self, state: AppState) -> None:
        """Atomically write ``state``.

        Raises:
            PersistenceError: the write failed after all retries.
        """
        data = state.to_json()
        with_retry(
            lambda: atomic_write(DATA_JSON, self.path, data, create_dirs=True, log=self.log),
            self.context.config.retry_attempts,
            self.context.config.retry_delay,
            self.log,
            what=f"snapshot write to {self.path}",
        )
        self.log.info(f"Saved snapshot at event {state.event_count} to {self.path}")

    def load(self) -> Optional[AppState]:
        """Read the snapshot, or None if there is no usable one."""
        try:
            data = load_json_file(self.path)
        except (CorruptionError, FileOperationError) as e:
            self.log.warning(f"Ignoring unreadable snapshot: {e}")
            return None
        if data is None:
            return None

        if data.get("version") != STATE_VERSION:
            self.log.warning(f"Ignoring snapshot {self.path} with state version {data.get('version')}, expected {STATE_VERSION}")
            return None

        try:
            return AppState.model_validate(data)
        except PydanticValidationError as e:
            self.log.warning(f"Ignoring invalid snapshot {self.path}: {e.error_count()} error(s)")
            return None
