from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from mapsync.db.base import Base


class SyncRunLog(Base):
    __tablename__ = 'sync_run_log'

    id = Column(Integer, primary_key=True, index=True)
    entity = Column(String(128), nullable=False, index=True)
    status = Column(String(32), nullable=False, default='completed', index=True)
    processed = Column(Integer, nullable=False, default=0)
    inserted = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    unchanged = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    orphans = Column(Integer, nullable=False, default=0)
    duplicates = Column(Integer, nullable=False, default=0)
    rows_read = Column(Integer, nullable=False, default=0)
    cancelled = Column(Boolean, nullable=False, default=False)
    load_ms = Column(Float, nullable=True)
    map_ms = Column(Float, nullable=True)
    write_ms = Column(Float, nullable=True)
    total_ms = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    error_samples_json = Column(Text, nullable=False, default='[]')
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class DeltaExportLog(Base):
    __tablename__ = 'delta_export_log'

    id = Column(Integer, primary_key=True, index=True)
    target_path = Column(String(1024), nullable=False)
    status = Column(String(32), nullable=False, default='completed')
    tables_json = Column(Text, nullable=False, default='{}')
    total_tables = Column(Integer, nullable=False, default=0)
    total_rows = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
