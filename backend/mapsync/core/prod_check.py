"""
Startup checks for APP_ENV=prod.
If any check fails a RuntimeError is raised and the worker does not start.
"""
from pathlib import Path

from mapsync.core.config import settings

# Values that are only acceptable for local development
INSECURE_DEFAULTS = {
    "DATABASE_URL": "sqlite:///./data/target.db",
    "SOURCE_DATABASE_URL": "sqlite:///./data/source.db",
}


def _sqlite_file(url: str) -> Path | None:
    text = (url or "").strip()
    if not text.startswith("sqlite:///"):
        return None
    raw = text[len("sqlite:///"):]
    if not raw or raw == ":memory:":
        return None
    return Path(raw).resolve()


def validate_production_config() -> None:
    """Reject default stores, in-memory targets and a delta store that overlaps the target."""
    if (getattr(settings, "app_env", "dev") or "dev").strip().lower() != "prod":
        return

    errors: list[str] = []

    database_url = (settings.database_url or "").strip()
    if not database_url:
        errors.append("DATABASE_URL must be set in production.")
    elif database_url == INSECURE_DEFAULTS["DATABASE_URL"]:
        errors.append("DATABASE_URL must not use the development default in production.")
    elif database_url.rstrip("/").endswith(":memory:") or database_url == "sqlite://":
        errors.append("DATABASE_URL must not point to an in-memory database in production.")

    source_driver = (settings.source_driver or "").strip().lower()
    if source_driver not in ("sqlalchemy", "mysql"):
        errors.append(f"SOURCE_DRIVER must be 'sqlalchemy' or 'mysql', got {settings.source_driver!r}.")
    elif source_driver == "sqlalchemy" and (settings.source_database_url or "").strip() in (
        "",
        INSECURE_DEFAULTS["SOURCE_DATABASE_URL"],
    ):
        errors.append("SOURCE_DATABASE_URL must be set and not use the development default in production.")
    elif source_driver == "mysql" and not (settings.mysql_database or "").strip():
        errors.append("MYSQL_DATABASE must be set when SOURCE_DRIVER=mysql.")

    if settings.delta_export_enabled:
        delta_path = (settings.delta_export_path or "").strip()
        if not delta_path:
            errors.append("DELTA_EXPORT_PATH must be set when DELTA_EXPORT_ENABLED=true.")
        else:
            target_file = _sqlite_file(database_url)
            if target_file is not None and Path(delta_path).resolve() == target_file:
                errors.append("DELTA_EXPORT_PATH must not point to the target database file.")

    if errors:
        raise RuntimeError(
            "Invalid production configuration:\n  - " + "\n  - ".join(errors)
        )
