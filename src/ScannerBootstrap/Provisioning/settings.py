"""Pydantic settings for the provisioning subsystem.

Values come from keyword overrides (the CLI) first and ``SCANNER_*``
environment variables second, e.g. ``SCANNER_HOST_URL``,
``SCANNER_USER_HOME``, ``SCANNER_TOKEN``, ``SCANNER_ENGINE_JAR_PATH``,
``SCANNER_JAVA_EXE_PATH``, ``SCANNER_SKIP_JRE_PROVISIONING``.  The JRE
operating system and architecture default to the running platform.
The cache root is derived from the user home directory.
"""

from __future__ import annotations

import logging
import platform
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["ProvisioningSettings", "get_settings", "detect_os", "detect_arch"]

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
_ARCH_ALIASES = {"x86_64": "x64", "amd64": "x64", "aarch64": "aarch64", "arm64": "aarch64"}


def detect_os() -> Optional[str]:
    """Name the running operating system the way the server lists runtimes.

    Returns:
        ``windows``, ``macos``, ``linux`` or ``alpine``; ``None`` when unknown.
    """

    system = platform.system().lower()
    if system == "windows":
        return "windows"
    if system == "darwin":
        return "macos"
    if system == "linux":
        return "alpine" if Path("/etc/alpine-release").exists() else "linux"
    return None


def detect_arch() -> Optional[str]:
    return _ARCH_ALIASES.get(platform.machine().lower())


class ProvisioningSettings(BaseSettings):
    """Inputs of a provisioning run."""

    model_config = SettingsConfigDict(
        env_prefix="SCANNER_", case_sensitive=False, extra="ignore", frozen=True
    )

    host_url: str = Field(default="http://localhost:9000", description="Server base URL")
    token: Optional[SecretStr] = Field(default=None, description="Bearer token for the server")
    user_home: Path = Field(
        default_factory=lambda: Path.home() / ".scanner",
        description="User-scoped home holding the artifact cache",
    )
    engine_jar_path: Optional[str] = Field(
        default=None, description="Local engine JAR used instead of provisioning"
    )
    java_exe_path: Optional[str] = Field(
        default=None, description="Local Java executable used instead of provisioning a JRE"
    )
    skip_jre_provisioning: bool = Field(default=False, description="Never provision a JRE")
    os_name: Optional[str] = Field(
        default_factory=detect_os, description="Operating system of the JRE"
    )
    arch: Optional[str] = Field(
        default_factory=detect_arch, description="CPU architecture of the JRE"
    )
    http_timeout: float = Field(default=100.0, gt=0.0, le=600.0, description="Seconds")
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    telemetry_path: Optional[Path] = Field(
        default=None, description="Optional JSON file receiving telemetry pairs"
    )

    @field_validator("host_url", mode="before")
    @classmethod
    def normalize_host_url(cls, v: Any) -> str:
        value = str(v).strip().rstrip("/")
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"host_url must be an http(s) URL, got '{v}'")
        return value

    @field_validator("user_home", mode="before")
    @classmethod
    def normalize_user_home(cls, v: Any) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("engine_jar_path", "java_exe_path", "os_name", "arch", mode="before")
    @classmethod
    def blank_override_is_none(cls, v: Any) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        return str(v)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        upper = str(v).upper()
        if upper not in _VALID_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_VALID_LEVELS)}, got '{v}'")
        return upper

    @property
    def cache_root(self) -> Path:
        return self.user_home / "cache"

    def level_int(self) -> int:
        return getattr(logging, self.log_level)

    def token_value(self) -> Optional[str]:
        return self.token.get_secret_value() if self.token else None


def get_settings(**overrides: Any) -> ProvisioningSettings:
    """Build settings, letting non-``None`` keyword overrides win over the environment."""

    provided = {key: value for key, value in overrides.items() if value is not None}
    return ProvisioningSettings(**provided)
