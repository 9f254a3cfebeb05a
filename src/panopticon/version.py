VERSION = "0.1.0"

# Bumped whenever the persisted AppState layout changes; snapshots written
# with another value are discarded and the log is replayed instead.
STATE_VERSION = 1

# Payload version stamped on every newly created event.
EVENT_VERSION = 1
