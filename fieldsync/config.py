"""Mirror configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class MirrorSettings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///fieldsync.db"
    echo_sql: bool = False
    app_title: str = "Field Inspection Mirror"
    log_level: str = "INFO"

    # Remote feature service
    feature_service_url: str = ""
    portal_url: str = "https://www.arcgis.com"
    remote_username: str | None = None
    remote_password: str | None = None
    token_expiration_minutes: int = 60
    http_timeout_seconds: float = 30.0
    query_page_size: int = 1000
    # Relation keys per child query (keeps IN (...) clauses under URL limits).
    child_query_chunk_size: int = 200

    parent_layer_id: int = 0
    descriptions_layer_id: int = 1
    facts_layer_id: int = 2
    # Remote field names used to build queries.
    action_code_field: str = "CA"
    alt_action_code_field: str = "OTRO_CA"
    relation_key_field: str = "GLOBALID"
    child_key_field: str = "GUID"
    edited_at_field: str = "LAST_EDITED_DATE"

    # Sync engine
    photo_storage_dir: str = "data/photos"
    sync_max_download_workers: int = 4
    # Also mirror attachments stored on the parent layer itself.
    sync_parent_attachments: bool = True
    sync_step_timeout_seconds: float = 300.0
    sync_join_separator: str = " | "
    sync_recent_threshold_minutes: int = 5
    sync_job_ttl_hours: int = 24

    # Remote metadata that changes on every query; never part of a fingerprint.
    fingerprint_ignored_fields: str = (
        "LAST_EDITED_DATE,LAST_EDITED_USER,CREATED_DATE,CREATED_USER,"
        "EditDate,Editor,CreationDate,Creator,last_queried"
    )
    overlay_allowed_fields: str = (
        "descriptions_text,facts_text,fact_descriptions_text,description,findings"
    )

    model_config = {"env_prefix": "FIELDSYNC_", "env_file": ".env", "extra": "ignore"}

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent

    @property
    def project_dir(self) -> Path:
        return self.base_dir.parent

    @property
    def photo_dir(self) -> Path:
        path = Path(self.photo_storage_dir)
        if not path.is_absolute():
            path = self.project_dir / path
        return path

    @property
    def fingerprint_ignored(self) -> frozenset[str]:
        return frozenset(name.lower() for name in _split_csv(self.fingerprint_ignored_fields))

    @property
    def overlay_fields(self) -> frozenset[str]:
        return frozenset(_split_csv(self.overlay_allowed_fields))

    @property
    def remote_configured(self) -> bool:
        return bool(self.feature_service_url.strip())

    @property
    def has_credentials(self) -> bool:
        return bool(self.remote_username and self.remote_password)


settings = MirrorSettings()
