import abc
from typing import Any, Dict, List, Tuple

from .recovery import MigrationError, UnknownEventError
from .version import EVENT_VERSION

# Raw payload dictionary as read from the log.
MigrationData = Dict[str, Any]

class EventMigration(abc.ABC):
    """
    An abstract base class for event payload migrations.

    Each concrete migration upgrades the payload of one event type from
    FROM_VERSION to FROM_VERSION + 1. Stored lines are never rewritten; the
    upgrade happens every time the line is read.
    """
    EVENT_TYPE: str = ""
    FROM_VERSION: int = 0

    @abc.abstractmethod
    def upgrade(self, payload: MigrationData) -> MigrationData:
        """
        Applies payload changes to upgrade it by one version.

        Args:
            payload: The raw payload dictionary of the stored event.

        Returns:
            The upgraded payload dictionary.
        """
        pass

class MigrationRegistry:
    """Holds the migrations known to this build and chains them."""

    def __init__(self, migrations: List[EventMigration] = None):
        self._migrations: Dict[Tuple[str, int], EventMigration] = {}
        for migration in migrations or []:
            self.register(migration)

    def register(self, migration: EventMigration) -> None:
        key = (migration.EVENT_TYPE, migration.FROM_VERSION)
        if key in self._migrations:
            raise MigrationError(f"Duplicate migration for {key[0]} v{key[1]}")
        self._migrations[key] = migration

    def upgrade(self, event_type: str, version: int, payload: MigrationData) -> MigrationData:
        """Bring a payload up to EVENT_VERSION.

        Raises:
            UnknownEventError: the record was written by a newer build, or no
                migration path exists from its version.
            MigrationError: a migration step failed.
        """
        if version > EVENT_VERSION:
            raise UnknownEventError(f"{event_type} v{version} is newer than supported v{EVENT_VERSION}")

        while version < EVENT_VERSION:
            migration = self._migrations.get((event_type, version))
            if migration is None:
                raise UnknownEventError(f"No migration for {event_type} from v{version}")
            try:
                payload = migration.upgrade(dict(payload))
            except (KeyError, TypeError, ValueError) as e:
                raise MigrationError(f"Migrating {event_type} from v{version} failed: {e}") from e
            version += 1
        return payload
