from __future__ import annotations

from dataclasses import dataclass


class BcdsError(Exception):
    """Base class for every error the deployment engine raises."""


class ConfigurationError(BcdsError):
    """Invalid catalog or project configuration. Always fatal."""


class ServiceNotFound(ConfigurationError):
    def __init__(self, service_id: str):
        super().__init__(f"Unknown challenge '{service_id}'.")
        self.service_id = service_id


class ExposureConflict(ConfigurationError):
    """Two containers claim the same public TCP port or HTTP subdomain."""

    def __init__(self, kind: str, key: str | int, first: str, second: str):
        super().__init__(f"{kind} {key!r} is claimed by both '{first}' and '{second}'.")
        self.kind = kind
        self.key = key
        self.claimants = (first, second)


class TransportError(BcdsError):
    """The remote API could not be reached."""

    def __init__(self, call: str, detail: str):
        super().__init__(f"{call}: {detail}")
        self.call = call


class RemoteRejectionError(BcdsError):
    """The remote side answered but refused the request. `body` is verbatim."""

    def __init__(self, call: str, status: int | None, body: str):
        where = f"HTTP {status}" if status is not None else "rejected"
        super().__init__(f"{call}: {where}: {body}")
        self.call = call
        self.status = status
        self.body = body


class ReadinessTimeout(BcdsError):
    def __init__(self, instance: str, timeout_s: float):
        super().__init__(f"Machine '{instance}' did not become ready within {timeout_s:g}s.")
        self.instance = instance
        self.timeout_s = timeout_s


class ImageError(BcdsError):
    """Docker build or push reported an error."""


class RunCancelled(BcdsError):
    pass


@dataclass(frozen=True)
class ContainerFailure:
    service_id: str
    container: str
    stage: str
    error: BaseException

    def describe(self) -> str:
        return f"{self.service_id} ({self.container}) failed during {self.stage}: {self.error}"


class PartialBatchFailure(BcdsError):
    """Some containers failed; the others were still deployed."""

    def __init__(self, failures: list[ContainerFailure]):
        lines = "\n".join(f"  - {f.describe()}" for f in failures)
        super().__init__(f"{len(failures)} container(s) failed:\n{lines}")
        self.failures = list(failures)
