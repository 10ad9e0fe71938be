"""Runtime configuration for the fix engine.

Values come from ``DEPREMEDY_*`` environment variables; anything unset keeps
the default declared on :class:`Settings`.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "DEPREMEDY_"


class Settings(BaseModel):
    """Tunable limits and locations."""

    # Resolver escalation
    gradle_timeout: float = Field(480.0, gt=0)
    gradle_discovery_timeout: float = Field(480.0, gt=0)
    gradle_max_output: int = Field(30 * 1024 * 1024, gt=0)
    maven_timeout: float = Field(120.0, gt=0)
    maven_max_output: int = Field(5 * 1024 * 1024, gt=0)
    subproject_concurrency: int = Field(2, ge=1)
    analysis_timeout: float = Field(1800.0, gt=0)

    # Safety classification
    default_runtime_version: int = 17
    rules_file: Path | None = None
    heuristics_file: Path | None = None

    # Clone cache
    clone_cache_dir: Path | None = None
    clone_cache_max_age: float = Field(24 * 3600.0, gt=0)
    clone_cache_max_reuses: int = Field(20, ge=1)

    # Vulnerability source
    osv_base_url: str = "https://api.osv.dev/v1"
    http_timeout: float = Field(30.0, gt=0)
    http_max_concurrency: int = Field(6, ge=1)

    # Version control
    git_timeout: float = Field(300.0, gt=0)
    git_max_output: int = Field(5 * 1024 * 1024, gt=0)
    branch_prefix: str = "depremedy/security-fixes"


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Args:
        env: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Validated settings
    """
    source = os.environ if env is None else env
    values: dict[str, str] = {}
    for name in Settings.model_fields:
        raw = source.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw.strip() != "":
            values[name] = raw.strip()
    return Settings(**values)
