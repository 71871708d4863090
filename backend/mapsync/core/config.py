from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    app_name: str = 'mapsync'
    app_env: str = Field(default='dev', alias='APP_ENV')
    log_level: str = Field(default='INFO', alias='LOG_LEVEL')

    # Target store (mutable) and bookkeeping tables.
    database_url: str = Field(default='sqlite:///./data/target.db', alias='DATABASE_URL')
    db_pool_size: int = Field(default=5, alias='DB_POOL_SIZE')
    db_max_overflow: int = Field(default=10, alias='DB_MAX_OVERFLOW')
    db_pool_timeout: int = Field(default=30, alias='DB_POOL_TIMEOUT')
    db_pool_recycle: int = Field(default=1800, alias='DB_POOL_RECYCLE')

    # Source store (read-only).
    source_driver: str = Field(default='sqlalchemy', alias='SOURCE_DRIVER')
    source_database_url: str = Field(default='sqlite:///./data/source.db', alias='SOURCE_DATABASE_URL')
    mysql_host: str = Field(default='localhost', alias='MYSQL_HOST')
    mysql_port: int = Field(default=3306, alias='MYSQL_PORT')
    mysql_user: str = Field(default='root', alias='MYSQL_USER')
    mysql_password: str = Field(default='', alias='MYSQL_PASSWORD')
    mysql_database: str = Field(default='', alias='MYSQL_DATABASE')

    manifest_path: str = Field(default='./config/manifest.yml', alias='MANIFEST_PATH')
    delta_export_path: str = Field(default='./data/delta.db', alias='DELTA_EXPORT_PATH')
    delta_export_enabled: bool = Field(default=True, alias='DELTA_EXPORT_ENABLED')

    sync_flag_column: str = Field(default='update', alias='SYNC_FLAG_COLUMN')
    sync_hash_column: str = Field(default='content_hash', alias='SYNC_HASH_COLUMN')
    sync_hash_decimal_places: int = Field(default=2, alias='SYNC_HASH_DECIMAL_PLACES')
    sync_sqlite_bind_limit: int = Field(default=999, alias='SYNC_SQLITE_BIND_LIMIT')
    sync_write_batch_size: int = Field(default=5000, alias='SYNC_WRITE_BATCH_SIZE')
    sync_fetch_batch_size: int = Field(default=5000, alias='SYNC_FETCH_BATCH_SIZE')
    sync_error_sample_size: int = Field(default=20, alias='SYNC_ERROR_SAMPLE_SIZE')
    sync_interval_seconds: float = Field(default=300.0, alias='SYNC_INTERVAL_SECONDS')
    sync_run_log_enabled: bool = Field(default=True, alias='SYNC_RUN_LOG_ENABLED')

    expression_max_depth: int = Field(default=16, alias='EXPRESSION_MAX_DEPTH')


settings = Settings()
