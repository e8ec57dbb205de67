"""Configuration for the sync kernel components."""

import os
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "SYNC_KERNEL_"


class ViewConfig(BaseModel):
    """View Registry and loader settings."""

    page_size: int = Field(ge=1, default=20)
    # Force revalidation of views stale for longer than this, even without a
    # read. None leaves staleness purely advisory.
    max_staleness_seconds: Optional[float] = None
    heartbeat_interval_seconds: float = 30.0


class CoordinatorConfig(BaseModel):
    """Optimistic Mutation Coordinator settings."""

    network_retry_attempts: int = Field(ge=0, default=1)
    network_retry_delay_seconds: float = 0.5
    echo_retention_seconds: float = 60.0
    echo_retention_max: int = 512


class PrefetchConfig(BaseModel):
    """Speculative Prefetch Scheduler settings."""

    enabled: bool = True
    max_concurrent: int = Field(ge=1, default=3)
    min_spacing_seconds: float = 0.5
    priority_threshold: int = 10            # Most recent N list ids warmed at high priority
    retry_delay_seconds: float = 5.0
    max_retries: int = Field(ge=0, default=1)
    fresh_ttl_seconds: float = 300.0


class SessionConfig(BaseModel):
    """Session Lifecycle Controller settings."""

    scope: str = "workspace"
    max_reconnect_attempts: int = Field(ge=0, default=10)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 5.0


class SyncConfig(BaseModel):
    views: ViewConfig = ViewConfig()
    coordinator: CoordinatorConfig = CoordinatorConfig()
    prefetch: PrefetchConfig = PrefetchConfig()
    session: SessionConfig = SessionConfig()

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SyncConfig":
        """
        Build a config from defaults overlaid with `SYNC_KERNEL_<SECTION>_<FIELD>`
        environment variables, e.g. `SYNC_KERNEL_PREFETCH_MAX_CONCURRENT=2`.
        """
        env = os.environ if environ is None else environ
        data: dict = {}
        for section, model in cls.model_fields.items():
            section_cls = model.annotation
            values = {}
            for name in section_cls.model_fields:
                raw = env.get(f"{ENV_PREFIX}{section.upper()}_{name.upper()}")
                if raw is not None and raw != "":
                    values[name] = raw
            if values:
                data[section] = values
        return cls.model_validate(data)
