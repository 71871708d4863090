"""
Structured JSON logging for sync runs.
Emit one JSON object per line with level, message, duration_ms, entity when available.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from mapsync.core.config import settings


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level or settings.log_level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )


def _extra(entity: str | None = None, duration_ms: float | None = None, stage: str | None = None, **kwargs: Any) -> dict[str, Any]:
    out: dict[str, Any] = {k: v for k, v in kwargs.items() if v is not None}
    if entity is not None:
        out["entity"] = entity
    if duration_ms is not None:
        out["duration_ms"] = round(duration_ms, 2)
    if stage is not None:
        out["stage"] = stage
    return out


def structured_log(
    level: str,
    message: str,
    *,
    entity: str | None = None,
    duration_ms: float | None = None,
    stage: str | None = None,
    **kwargs: Any,
) -> None:
    payload = {"level": level, "message": message, **_extra(entity=entity, duration_ms=duration_ms, stage=stage, **kwargs)}
    line = json.dumps(payload, ensure_ascii=False, default=str)
    if settings.app_env == "dev":
        logging.getLogger("mapsync").log(
            getattr(logging, level.upper(), logging.INFO),
            "%s %s", level, message, extra={"payload": payload},
        )
    print(line, flush=True)


def log_sync_run(entity: str, stats: dict[str, Any]) -> None:
    timing = stats.get("timing") or {}
    structured_log(
        "warning" if int(stats.get("errors") or 0) > 0 else "info",
        "sync_run",
        entity=entity,
        duration_ms=float(timing.get("total_ms") or 0.0),
        stage="completed",
        processed=stats.get("processed"),
        inserted=stats.get("inserted"),
        updated=stats.get("updated"),
        unchanged=stats.get("unchanged"),
        errors=stats.get("errors"),
        orphans=stats.get("orphans"),
    )


def log_delta_export(target_path: str, tables: dict[str, int], duration_ms: float) -> None:
    structured_log(
        "info",
        "delta_export",
        duration_ms=duration_ms,
        stage="delta_export",
        target=target_path,
        tables=tables,
        total_tables=len(tables),
        total_rows=sum(tables.values()),
    )
