from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError, ServiceNotFound

CHALLENGE_FILE = "challenge.toml"

# Components of a derived machine name. Must start and end with [a-z0-9_] so the
# hyphen escaping in instance_name() stays injective.
IDENT_RE = re.compile(r"^[a-z0-9](?:[a-z0-9_-]{0,61}[a-z0-9_])?$")

INGRESS_NAME = "ingress"


def validate_ident(value: str, what: str) -> str:
    if not IDENT_RE.match(value):
        raise ValueError(
            f"Invalid {what} '{value}'. Use lowercase letters, numbers, '_' and '-', "
            "not starting or ending with '-' (max 63 chars)."
        )
    return value


def instance_name(service_id: str, container: str) -> str:
    """Machine name for one container of a challenge.

    ``crypto/aesy`` + ``main`` -> ``crypto-aesy-main``. Hyphens inside a
    component are doubled first, so ``a/b-c`` + ``d`` (``a-b--c-d``) and
    ``a/b`` + ``c-d`` (``a-b-c--d``) can never meet.
    """
    parts = service_id.split("/") + [container]
    return "-".join(p.replace("-", "--") for p in parts)


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Limits(_Model):
    cpu: int = Field(1, ge=1, le=16, description="Shared CPU count")
    # Checked against the 256 MB granularity by the reconciler, before any remote call.
    memory: int = Field(256, description="Memory in MB, a positive multiple of 256")


class Container(_Model):
    build: Path = Field(Path("."), description="Build context, relative to the challenge directory")
    limits: Limits = Field(default_factory=Limits)
    ports: list[int] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("ports")
    @classmethod
    def _ports_in_range(cls, v: list[int]) -> list[int]:
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} out of range")
        return v


class TcpExposure(_Model):
    kind: Literal["tcp"]
    port: int = Field(..., ge=1, le=65535, description="Public port on the ingress")
    target: int = Field(..., ge=1, le=65535, description="Port the container listens on")


class HttpExposure(_Model):
    kind: Literal["http"]
    subdomain: str = Field(..., description="Label served at <subdomain>.<hostname>")
    target: int = Field(..., ge=1, le=65535)

    @field_validator("subdomain")
    @classmethod
    def _dns_label(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$", v):
            raise ValueError(f"subdomain '{v}' is not a valid DNS label")
        return v


Exposure = Annotated[Union[TcpExposure, HttpExposure], Field(discriminator="kind")]


class FileAttachment(_Model):
    kind: Literal["file"]
    path: Path


class NamedAttachment(_Model):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    kind: Literal["named"]
    path: Path
    as_name: str = Field(..., alias="as")


Attachment = Annotated[Union[FileAttachment, NamedAttachment], Field(discriminator="kind")]


class Service(_Model):
    """One challenge. ``id`` comes from the directory layout, never from the file."""

    id: str
    directory: Path
    name: str
    author: str
    description: str = ""
    flag: str
    provide: list[Attachment] = Field(default_factory=list)
    containers: dict[str, Container] = Field(default_factory=dict)
    expose: dict[str, Exposure] = Field(default_factory=dict)

    @field_validator("containers")
    @classmethod
    def _container_names(cls, v: dict[str, Container]) -> dict[str, Container]:
        for name in v:
            validate_ident(name, "container name")
        return v

    @model_validator(mode="after")
    def _expose_known_containers(self) -> "Service":
        for name in self.expose:
            if name not in self.containers:
                raise ValueError(f"expose.{name} refers to an undeclared container")
        return self

    @property
    def category(self) -> str:
        return self.id.split("/", 1)[0]

    def instance_name(self, container: str) -> str:
        return instance_name(self.id, container)

    def build_context(self, container: str) -> Path:
        return (self.directory / self.containers[container].build).resolve()


def _service_id(root: Path, chall_dir: Path) -> str:
    category, name = chall_dir.relative_to(root).parts
    return f"{category}/{name}"


def get_chall_paths(root: str | Path) -> list[Path]:
    """Challenge directories under ``<root>/<category>/<name>/``, sorted."""
    root = Path(root)
    if not root.is_dir():
        raise ConfigurationError(
            f"Failed to read challenge directory {root}. Make sure it exists and you have correct permissions."
        )
    out: list[Path] = []
    for category in sorted(root.iterdir()):
        if not category.is_dir() or category.name.startswith("."):
            continue
        for chall in sorted(category.iterdir()):
            if (chall / CHALLENGE_FILE).is_file():
                out.append(chall)
    return out


def parse_service(root: str | Path, chall_dir: str | Path) -> Service:
    root = Path(root)
    chall_dir = Path(chall_dir)
    service_id = _service_id(root, chall_dir)
    path = chall_dir / CHALLENGE_FILE
    try:
        category, name = service_id.split("/")
        validate_ident(category, "category")
        validate_ident(name, "challenge directory name")
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
        return Service.model_validate({**raw, "id": service_id, "directory": chall_dir})
    except (ValueError, ValidationError) as e:
        # tomllib.TOMLDecodeError is a ValueError
        raise ConfigurationError(f"{service_id}: invalid {CHALLENGE_FILE}: {e}") from e


def list_service_ids(root: str | Path) -> list[str]:
    root = Path(root)
    return [_service_id(root, p) for p in get_chall_paths(root)]


def list_services(root: str | Path) -> list[Service]:
    root = Path(root)
    return [parse_service(root, p) for p in get_chall_paths(root)]


def get_service(root: str | Path, service_id: str) -> Service:
    root = Path(root)
    parts = service_id.strip("/").split("/")
    if len(parts) != 2 or not all(parts):
        raise ServiceNotFound(service_id)
    chall_dir = root / parts[0] / parts[1]
    if not (chall_dir / CHALLENGE_FILE).is_file():
        raise ServiceNotFound(service_id)
    return parse_service(root, chall_dir)


def get_services(root: str | Path, service_ids: Iterable[str]) -> list[Service]:
    """Resolve an explicit selection. Every id is checked before any is returned."""
    ids = list(dict.fromkeys(service_ids))
    known = set(list_service_ids(root))
    for sid in ids:
        if sid.strip("/") not in known:
            raise ServiceNotFound(sid)
    return [get_service(root, sid) for sid in ids]
