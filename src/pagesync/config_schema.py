"""Configuration schema for pagesync.

Defines Pydantic models for the config file with dedicated sections for the
remote content service, the sync core, and logging.  Every section has
sensible defaults, so ``PageSyncConfig()`` (zero-config) is always valid.

Usage:
    from pagesync.config_loader import load_config_file
    from pagesync.config_schema import build_config

    config = build_config(load_config_file())
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    """Remote content service connection settings.

    All fields are optional so env vars can supply them at runtime.
    """

    url: str | None = Field(
        default=None, description="Base URL of the content service"
    )
    username: str | None = Field(default=None, description="Account name")
    token: str | None = Field(default=None, description="API token")
    space_id: str | None = Field(
        default=None,
        description="Space that newly created documents belong to",
    )
    timeout: float = Field(
        default=60.0,
        gt=0,
        description="Read timeout for a single request in seconds",
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Settings for the synchronization core."""

    manifest_path: str = Field(
        default=".pagesync.json",
        description="Manifest file, relative to the sync root",
    )
    sync_root: str = Field(
        default=".", description="Directory that mirrors the remote tree"
    )
    concurrency_limit: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum concurrent per-document operations (1-100)",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per push/pull before giving up",
    )
    retry_backoff: float = Field(
        default=0.5,
        ge=0,
        description="Initial delay between attempts in seconds",
    )
    conflict_strategy: Literal["manual", "local-wins", "remote-wins"] = (
        Field(
            default="manual",
            description="Strategy applied to conflicts during a pass",
        )
    )
    history_limit: int = Field(
        default=50,
        ge=1,
        description="Resolution records kept per document",
    )
    index_filename: str = Field(
        default="_index.md",
        description="File name used for documents with children",
    )
    extension: str = Field(
        default="md", description="Extension for leaf documents"
    )
    max_name_length: int = Field(
        default=100,
        ge=8,
        le=255,
        description="Maximum length of a sanitized title",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: "text" or "json".
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(
        default="text", description="Log record format"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class PageSyncConfig(BaseModel):
    """Top-level configuration aggregating all sections."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict | None) -> PageSyncConfig:
    """Construct a ``PageSyncConfig`` from the raw dict returned by
    ``load_config_file()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Configuration dictionary (may be empty).

    Returns:
        Validated ``PageSyncConfig`` instance.
    """
    if not raw_data:
        return PageSyncConfig()

    return PageSyncConfig(**raw_data)
