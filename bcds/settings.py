from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_env_file(config_path: str | Path) -> bool:
    """Load ``.env`` from the directory holding ``bear.toml``.

    Variables already present in the process environment win over the file.
    """
    env_file = Path(config_path).parent / ".env"
    if not env_file.is_file():
        return False
    return load_dotenv(env_file, override=False)


@dataclass(frozen=True)
class Settings:
    # Fly Machines API
    fly_api_hostname: str = "https://api.machines.dev"
    fly_api_token: str | None = None
    http_timeout_s: float = 30.0
    retry_attempts: int = 3
    retry_backoff_s: float = 1.0

    # Deploy
    workers: int = 4
    ready_timeout_s: float = 300.0

    # rCTF (optional)
    rctf_admin_token: str | None = None

    log_level: str = "INFO"
    verbose_docker: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            fly_api_hostname=os.getenv("FLY_API_HOSTNAME", cls.fly_api_hostname).rstrip("/"),
            fly_api_token=os.getenv("FLY_API_TOKEN"),
            http_timeout_s=_env_float("BCDS_HTTP_TIMEOUT_S", cls.http_timeout_s),
            retry_attempts=max(1, _env_int("BCDS_RETRY_ATTEMPTS", cls.retry_attempts)),
            retry_backoff_s=_env_float("BCDS_RETRY_BACKOFF_S", cls.retry_backoff_s),
            workers=max(1, _env_int("BCDS_WORKERS", cls.workers)),
            ready_timeout_s=_env_float("BCDS_READY_TIMEOUT_S", cls.ready_timeout_s),
            rctf_admin_token=os.getenv("RCTF_ADMIN_TOKEN"),
            log_level=os.getenv("BCDS_LOG_LEVEL", cls.log_level).upper(),
            verbose_docker=_env_bool("BCDS_VERBOSE_DOCKER", False),
        )

    def require_fly_token(self) -> str:
        if not self.fly_api_token:
            raise ConfigurationError("FLY_API_TOKEN is not set.")
        return self.fly_api_token


class FlyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    org: str = Field(..., description="Fly organization slug")
    app_name: str = Field(..., description="Fly app holding every challenge machine")


class RctfConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., description="rCTF base URL, e.g. https://rctf.example.com")


class ProjectConfig(BaseModel):
    """Contents of ``bear.toml``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fly: FlyConfig
    rctf: RctfConfig | None = None
    chall_root: Path = Path(".")
    hostname: str = Field(..., description="Public hostname; HTTP challenges live at <sub>.<hostname>")
    caddy: dict[str, Any] = Field(default_factory=dict, description="Override merged onto the generated Caddy config")

    @property
    def registry_repo(self) -> str:
        return f"registry.fly.io/{self.fly.app_name}"


def load_project_config(path: str | Path) -> ProjectConfig:
    """Read and validate ``bear.toml``.

    A relative ``chall_root`` is resolved against the directory holding the file;
    when absent it defaults to that directory.
    """
    p = Path(path)
    try:
        raw = tomllib.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(
            f"{p} not found. Please make sure bear.toml exists in the current directory."
        ) from None
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to parse {p}: {e}") from e

    try:
        cfg = ProjectConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {p}: {e}") from e

    root = cfg.chall_root if cfg.chall_root.is_absolute() else (p.parent / cfg.chall_root)
    return cfg.model_copy(update={"chall_root": root.resolve()})
