"""Application constants."""

DEFAULT_ROOT_PATH = "UsersData"
DEFAULT_STORE_URL = "memory://"
DEFAULT_DATABASE_PATH = "./data/roadsync.db"
DEFAULT_POOL_SIZE = 4
DEFAULT_SYNC_LIMIT = 200
MAX_SYNC_LIMIT = 5000
DEFAULT_STARTUP_SYNC_LIMIT = 500
WATCH_HANDLED_CAPACITY = 4096

SYNC_MODES = ("auto", "threshold", "flags")
COMMANDS = ("sync", "watch", "serve", "peek")

MIGRATION_FIELD = "_migration"
STATUS_MIGRATED = "migrated"
STATUS_DENIED = "denied"
STATUS_WOULD_MIGRATE = "would_migrate"
STATUS_ERROR = "error"

CHILD_ADDED = "child_added"
CHILD_CHANGED = "child_changed"

GRID_PRECISION = 4

EXIT_SUCCESS = 0
EXIT_PARTIAL = 10
EXIT_HARD_FAIL = 20
JSON_LOG_FIELDS = (
    "timestamp",
    "run_id",
    "stage",
    "mode",
    "path",
    "key",
    "event",
    "status",
    "reason",
    "grid_id",
    "duration_ms",
    "error_code",
    "message",
)
