"""Application settings loaded from environment variables.

Uses Pydantic Settings v2 for validated, type-safe configuration.
All credentials and secrets are accessed exclusively through this module;
never call ``os.getenv`` directly elsewhere in the codebase.

Several fields also accept the environment variable names used by earlier
deployments of the relay (``GITHUB_ACCESS_TOKEN``, ``MIN_API_KEYS``, ...).

Usage::

    from key_relay.config.settings import get_settings

    settings = get_settings()
    minimum = settings.min_credentials
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay configuration backed by environment variables and an optional .env file.

    Every field has a default so the application can be imported without any
    environment.  Backend-specific fields (the GitHub token, owner and repo)
    are validated when the corresponding backend is built at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ------------------------------------------------------------------
    # Upstream
    # ------------------------------------------------------------------

    upstream_base_url: str = Field(
        default="https://router.huggingface.co",
        validation_alias=AliasChoices("upstream_base_url", "base_url"),
    )
    """Scheme and host of the upstream API.  Inbound path and query are appended verbatim."""

    upstream_timeout: float = 300.0
    """Seconds allowed for a single upstream attempt (connect, write and read)."""

    proxy_methods: list[str] = ["POST"]
    """HTTP methods routed through the credential pool.  Others get a 405."""

    auth_header_name: str = "Authorization"
    """Header overwritten with the selected credential on every upstream attempt."""

    auth_scheme: str = "Bearer"
    """Prefix placed before the credential in the auth header.  Empty for raw tokens."""

    exhausted_status_code: int = 402
    """Upstream status meaning "this credential is no longer usable"."""

    # ------------------------------------------------------------------
    # Pool sizing and provisioning
    # ------------------------------------------------------------------

    min_credentials: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("min_credentials", "min_api_keys"),
    )
    """Healthy active-credential count.  Provisioning runs while below it."""

    provisioning_timeout: float = Field(
        default=300.0,
        gt=0,
        validation_alias=AliasChoices("provisioning_timeout", "key_creation_timeout"),
    )
    """Seconds a single Provisioner call may take before it counts as failed."""

    provisioning_lock_timeout: float = Field(
        default=600.0,
        gt=0,
        validation_alias=AliasChoices(
            "provisioning_lock_timeout", "key_creation_lock_timeout"
        ),
    )
    """Age in seconds after which a held provisioning lock is considered stale.

    Kept above ``provisioning_timeout`` so that a healthy, slow attempt is
    never overtaken by a second one.
    """

    provisioning_retry_delay: float = Field(default=1.0, ge=0)
    """Pause before the follow-up provisioning round while still below minimum."""

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    pool_storage_key: str = "huggingface_api_keys"
    """Logical store key holding the serialised pool."""

    persist_policy: Literal["target", "always"] = "target"
    """``target`` writes only when the active count reaches ``min_credentials``;
    ``always`` also writes after every deprecation."""

    store_backend: Literal["github", "memory"] = "github"
    """Backend for the credential store.  ``memory`` keeps nothing across restarts."""

    store_transform: Literal["rot13", "none"] = "rot13"
    """Self-inverse text transform applied before base64 encoding stored blobs."""

    store_conflict_retries: int = Field(default=1, ge=0)
    """Immediate re-submissions after an optimistic-write conflict."""

    github_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("github_token", "github_access_token"),
    )
    """Personal access token with contents read/write on ``github_repo``."""

    github_owner: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("github_owner", "github_username"),
    )
    """Owner (user or organisation) of the storage repository."""

    github_repo: Optional[str] = None
    """Name of the storage repository."""

    github_branch: str = "main"
    """Branch that receives storage commits."""

    github_api_url: str = "https://api.github.com"
    """Base URL of the GitHub REST API.  Override for GitHub Enterprise."""

    # ------------------------------------------------------------------
    # Provisioner
    # ------------------------------------------------------------------

    provisioner_command: Optional[str] = None
    """Command line whose last non-empty stdout line is a freshly minted credential."""

    provisioner_factory: Optional[str] = None
    """``module:attribute`` path to a zero-argument callable returning a Provisioner.
    Takes precedence over ``provisioner_command``."""

    # ------------------------------------------------------------------
    # Application behaviour
    # ------------------------------------------------------------------

    app_name: str = "Key Relay"
    """Human-readable application name shown in the OpenAPI docs."""

    host: str = "0.0.0.0"
    """Interface uvicorn binds to when started with ``python -m key_relay``."""

    port: int = 7860
    """Port uvicorn listens on when started with ``python -m key_relay``."""

    debug: bool = False
    """Enable FastAPI debug mode.  Never True in production."""

    log_level: str = "INFO"
    """Logging verbosity.  One of: DEBUG, INFO, WARNING, ERROR, CRITICAL."""

    shutdown_grace: float = Field(default=5.0, ge=0)
    """Seconds background work (a pool write, a provisioning round) may keep
    running at shutdown before it is cancelled."""


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    In tests, call ``get_settings.cache_clear()`` after patching environment
    variables.

    Returns:
        Settings: The validated settings object.
    """
    return Settings()
