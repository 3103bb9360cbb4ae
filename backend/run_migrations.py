"""Create the schema and seed rows for the configured database (DATABASE_URL)."""
import sys

from cms_api.bootstrap import initialize
from cms_api.config import Settings
from cms_api.database import Database
from cms_api.errors import StorageError


def run() -> int:
    """Apply the idempotent schema initializer once.

    Existing rows are never dropped; seed rows are only inserted when
    missing. Returns a process exit code.
    """
    settings = Settings()
    db = Database(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    print("Using database:", db.engine.url.render_as_string(hide_password=True))
    try:
        initialize(db, settings)
    except StorageError as exc:
        print("Initialization failed:", exc.message, file=sys.stderr)
        return 1
    finally:
        db.dispose()
    print("Schema ready.")
    return 0


if __name__ == '__main__':
    sys.exit(run())
