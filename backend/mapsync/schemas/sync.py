from pydantic import BaseModel, ConfigDict, Field, computed_field


class SyncTiming(BaseModel):
    load_ms: float = 0.0
    map_ms: float = 0.0
    write_ms: float = 0.0
    total_ms: float = 0.0


class SyncStats(BaseModel):
    entity: str
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    orphans: int = 0
    orphan_keys: list[tuple[str, ...]] = Field(default_factory=list)
    duplicates: int = 0
    rows_read: int = 0
    cancelled: bool = False
    error_samples: list[str] = Field(default_factory=list)
    timing: SyncTiming = Field(default_factory=SyncTiming)

    @computed_field
    @property
    def has_warnings(self) -> bool:
        return self.errors > 0 or self.duplicates > 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class FlaggedTableDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    create_statement: str
    flag_column: str
    key_columns: tuple[str, ...] = ()

    @property
    def uses_rowid(self) -> bool:
        return not self.key_columns


class DeltaExportResult(BaseModel):
    target_path: str
    tables: dict[str, int] = Field(default_factory=dict)
    skipped_tables: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0

    @computed_field
    @property
    def total_rows(self) -> int:
        return sum(self.tables.values())
