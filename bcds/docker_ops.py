from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import docker
from docker.errors import APIError, BuildError, DockerException

from .errors import ImageError
from .events import log_event

INGRESS_BUNDLE = Path(__file__).parent / "ingress"

# Fly's registry accepts any username together with an API token as password.
REGISTRY_USER = "x"


@dataclass(frozen=True)
class ImageRef:
    repo: str
    tag: str

    @property
    def ref(self) -> str:
        return f"{self.repo}:{self.tag}"


def _drain(stream: Iterable[dict[str, Any]], what: str, verbose: bool = False) -> None:
    """Consume a docker progress stream, failing on the first error entry."""
    for chunk in stream:
        if "error" in chunk:
            detail = chunk.get("errorDetail", {}).get("message") or chunk["error"]
            raise ImageError(f"{what}: {str(detail).strip()}")
        line = chunk.get("stream") or chunk.get("status")
        if verbose and line and line.strip():
            log_event("DEBUG", f"{what}: {line.strip()}")


class ImageBuilder:
    """Builds and pushes challenge images through the local docker daemon."""

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        registry_password: str | None = None,
        verbose: bool = False,
    ):
        self._client = client
        self.registry_password = registry_password
        self.verbose = verbose

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ImageError(
                    f"Docker is not available ({e}). Start Docker Desktop / docker daemon and try again."
                ) from e
        return self._client

    def build(self, context: Path, image: ImageRef) -> None:
        context = Path(context)
        if not (context / "Dockerfile").is_file():
            raise ImageError(f"build {image.ref}: no Dockerfile in {context}")
        log_event("INFO", f"Building {image.ref} from {context}")
        try:
            stream = self.client.api.build(path=str(context), tag=image.ref, rm=True, decode=True)
            _drain(stream, f"build {image.ref}", self.verbose)
        except (APIError, BuildError) as e:
            raise ImageError(f"build {image.ref}: {e}") from e

    def push(self, image: ImageRef) -> None:
        auth = None
        if self.registry_password:
            auth = {"username": REGISTRY_USER, "password": self.registry_password}
        log_event("INFO", f"Pushing {image.ref}")
        try:
            stream = self.client.api.push(image.repo, tag=image.tag, auth_config=auth, stream=True, decode=True)
            _drain(stream, f"push {image.ref}", self.verbose)
        except APIError as e:
            raise ImageError(f"push {image.ref}: {e}") from e

    def build_and_push(self, context: Path, image: ImageRef) -> None:
        self.build(context, image)
        self.push(image)
