from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from mapsync.db.base import Base
from mapsync.db.session import engine as default_engine
from mapsync.models import DeltaExportLog, SyncRunLog  # noqa: F401  registers tables on Base.metadata

logger = logging.getLogger(__name__)


def bootstrap_database(bind: Engine | None = None) -> None:
    """
    Ensure the bookkeeping tables (sync run log, delta export log) exist.
    Entity target tables are owned by the target schema and are never created here.
    """
    target = bind or default_engine
    try:
        Base.metadata.create_all(bind=target)
    except Exception:
        logger.exception('DB bootstrap failed')
        raise
    logger.info('DB bootstrap completed (bookkeeping tables ensured on %s)', target.url.render_as_string(hide_password=True))
