# config.py
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from graph import DEFAULT_BASE_URL


class Settings(BaseSettings):
    """Runtime settings.

    Precedence: defaults < environment (.env included) < `config` table < explicit
    overrides such as CLI flags. Tunables read `QUEUE_<NAME>` from the environment;
    credentials and paths use the fixed variable names below.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # runtime tunables (also stored in the `config` table, see `cli.py config set`)
    batch_size: int = Field(default=10, ge=1, description="Jobs claimed per tick")
    concurrency: int = Field(default=1, ge=1, description="Jobs published in parallel")
    lease_seconds: int = Field(default=900, ge=1, description="Claim lease per job")
    max_attempts: int = Field(default=0, ge=0, description="Dead-letter ceiling, 0 = unlimited")
    backoff_base: float = Field(default=30.0, gt=0)
    backoff_ceiling: float = Field(default=900.0, gt=0)
    max_polls: int = Field(default=20, ge=1)
    poll_interval: float = Field(default=3.0, ge=0)
    tick_interval: float = Field(default=60.0, gt=0)
    run_lock_seconds: int = Field(default=3600, ge=1, description="Expiry of the shared run lock")

    # environment
    db_path: str = Field(default="queue.db", validation_alias="QUEUE_DB")
    ig_user_id: Optional[str] = Field(default=None, validation_alias="IG_USER_ID")
    ig_access_token: Optional[str] = Field(default=None, validation_alias="IG_ACCESS_TOKEN")
    graph_api_base: str = Field(default=DEFAULT_BASE_URL, validation_alias="GRAPH_API_BASE")
    cron_key: Optional[str] = Field(default=None, validation_alias="CRON_KEY")

    @field_validator("ig_user_id", "ig_access_token", "cron_key", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_backoff(self):
        if self.backoff_ceiling < self.backoff_base:
            raise ValueError("backoff_ceiling must be >= backoff_base")
        return self

    @classmethod
    def load(cls, db, base=None, **overrides):
        """Build settings from `base` (or the environment), the config table and overrides.

        Every value goes through model validation, so a bad table entry raises
        pydantic's ValidationError (a ValueError) naming the key.
        """
        unknown = sorted(set(overrides) - set(cls.model_fields))
        if unknown:
            raise TypeError(f"unknown setting: {', '.join(unknown)}")
        values = base.model_dump(exclude_unset=True) if base is not None else {}
        for key in TUNABLES:
            raw = db.get_config(key)
            if raw is not None:
                values[key] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def missing_credentials(self):
        return [name for name, value in (("IG_USER_ID", self.ig_user_id),
                                         ("IG_ACCESS_TOKEN", self.ig_access_token)) if not value]


# Keys stored in the `config` table
TUNABLES = tuple(
    name for name, field in Settings.model_fields.items() if field.validation_alias is None
)
