from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from .catalog import INGRESS_NAME, Limits
from .docker_ops import INGRESS_BUNDLE, ImageRef
from .errors import ConfigurationError, RunCancelled
from .events import log_event
from .machines import ExecResult, RemoteInstance

MEMORY_STEP_MB = 256

# Ports the ingress always serves besides the TCP exposures.
INGRESS_HTTP_PORTS = (80, 443)


class InstanceAPI(Protocol):
    def list_instances(self, app: str) -> list[RemoteInstance]: ...

    def create_instance(self, app: str, name: str, config: dict[str, Any]) -> RemoteInstance: ...

    def update_instance(self, app: str, instance_id: str, config: dict[str, Any]) -> RemoteInstance: ...

    def wait_ready(
        self, app: str, instance_id: str, timeout_s: float, cancel: threading.Event | None = None
    ) -> None: ...

    def exec_command(self, app: str, instance_id: str, argv: list[str], timeout_s: int = 30) -> ExecResult: ...


class ImageBuilderLike(Protocol):
    def build(self, context: Any, image: ImageRef) -> None: ...

    def push(self, image: ImageRef) -> None: ...


def validate_memory(memory_mb: int) -> None:
    if memory_mb <= 0 or memory_mb % MEMORY_STEP_MB != 0:
        raise ConfigurationError(f"Memory must be a positive multiple of {MEMORY_STEP_MB} MB (got {memory_mb}).")


def machine_config(image: str, limits: Limits, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    validate_memory(limits.memory)
    config: dict[str, Any] = {
        "image": image,
        "guest": {"cpu_kind": "shared", "cpus": limits.cpu, "memory_mb": limits.memory},
    }
    if env:
        config["env"] = dict(env)
    return config


def ingress_services(tcp_ports: list[int]) -> list[dict[str, Any]]:
    """Fly service entries for the ingress: every TCP exposure plus 80/443."""
    ports = sorted(set(tcp_ports)) + [p for p in INGRESS_HTTP_PORTS if p not in tcp_ports]
    return [{"ports": [{"port": p}], "protocol": "tcp", "internal_port": p} for p in ports]


@dataclass(frozen=True)
class ReconcileResult:
    name: str
    instance: RemoteInstance
    created: bool


class MachineReconciler:
    """Create-or-update decisions for one app. Never deletes machines."""

    def __init__(
        self,
        api: InstanceAPI,
        app: str,
        ready_timeout_s: float = 300.0,
        cancel: threading.Event | None = None,
    ):
        self.api = api
        self.app = app
        self.ready_timeout_s = ready_timeout_s
        self.cancel = cancel or threading.Event()

    def _guard(self, name: str) -> None:
        if self.cancel.is_set():
            raise RunCancelled(f"Run cancelled before reconciling '{name}'.")

    def snapshot(self) -> dict[str, RemoteInstance]:
        return {m.name: m for m in self.api.list_instances(self.app)}

    def reconcile(
        self,
        snapshot: Mapping[str, RemoteInstance],
        name: str,
        config: dict[str, Any],
        service_name: str | None = None,
        container: str | None = None,
    ) -> ReconcileResult:
        """Apply one desired machine against the snapshot: create if absent, else update."""
        guest = config.get("guest") or {}
        if "memory_mb" in guest:
            validate_memory(guest["memory_mb"])
        self._guard(name)

        existing = snapshot.get(name)
        if existing is None:
            machine = self.api.create_instance(self.app, name, config)
            log_event("INFO", f"Created machine {name} ({machine.id})", service_name, container)
            return ReconcileResult(name=name, instance=machine, created=True)

        machine = self.api.update_instance(self.app, existing.id, config)
        log_event("INFO", f"Updated machine {name} ({existing.id})", service_name, container)
        # Update never changes identity.
        if machine.id != existing.id:
            machine = RemoteInstance(id=existing.id, name=name, state=machine.state, image=machine.image)
        return ReconcileResult(name=name, instance=machine, created=False)

    def ensure_ingress(
        self,
        snapshot: Mapping[str, RemoteInstance],
        builder: ImageBuilderLike,
        repo: str,
    ) -> RemoteInstance:
        """Create the ingress machine from the bundled Caddy image if it is missing."""
        existing = snapshot.get(INGRESS_NAME)
        if existing is not None:
            return existing

        self._guard(INGRESS_NAME)
        log_event("INFO", "Caddy server not found. Building and deploying.")
        image = ImageRef(repo, INGRESS_NAME)
        builder.build(INGRESS_BUNDLE, image)
        builder.push(image)

        self._guard(INGRESS_NAME)
        machine = self.api.create_instance(self.app, INGRESS_NAME, {"image": image.ref})
        log_event("INFO", f"Waiting on ingress ({machine.id}) to start")
        self.api.wait_ready(self.app, machine.id, self.ready_timeout_s, self.cancel)
        log_event("INFO", "Ingress created")
        return machine

    def update_ingress(self, ingress: RemoteInstance, repo: str, tcp_ports: list[int]) -> RemoteInstance:
        """Open the public TCP ports on the ingress and wait for it to come back."""
        self._guard(INGRESS_NAME)
        config = {
            "image": ingress.image or ImageRef(repo, INGRESS_NAME).ref,
            "services": ingress_services(tcp_ports),
        }
        machine = self.api.update_instance(self.app, ingress.id, config)
        log_event("INFO", "Waiting on ingress to restart")
        self.api.wait_ready(self.app, ingress.id, self.ready_timeout_s, self.cancel)
        log_event("INFO", "Ingress updated")
        return RemoteInstance(id=ingress.id, name=INGRESS_NAME, state=machine.state, image=config["image"])
