from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from .errors import ReadinessTimeout, RemoteRejectionError, RunCancelled, TransportError
from .events import log_event
from .settings import Settings

# Statuses worth retrying on idempotent reads.
RETRYABLE_STATUS = {502, 503, 504}

# The Machines API caps a single /wait call at 60 seconds.
MAX_WAIT_CALL_S = 60


@dataclass(frozen=True)
class RemoteInstance:
    id: str
    name: str
    state: str = "unknown"  # created|starting|started|stopping|stopped|destroyed
    image: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteInstance":
        config = data.get("config") or {}
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            state=data.get("state") or "unknown",
            image=config.get("image"),
        )


@dataclass(frozen=True)
class ExecResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    exit_signal: int | None = None

    @property
    def ok(self) -> bool:
        # No exit code means the process never exited normally.
        return self.exit_code == 0 and self.exit_signal is None

    def status(self) -> str:
        if self.exit_signal is not None:
            return f"signal {self.exit_signal}"
        if self.exit_code is None:
            return "no exit code"
        return f"exit {self.exit_code}"

    def output(self) -> str:
        return "\n".join(x for x in (self.stdout, self.stderr) if x)


@dataclass
class MachinesClient:
    """Thin client for the Fly Machines REST API.

    Reads (app lookup, list, wait) are retried with exponential backoff on
    transport errors and gateway statuses. Creates, updates and exec calls are
    sent once.
    """

    base_url: str
    token: str
    timeout_s: float = 30.0
    retry_attempts: int = 3
    retry_backoff_s: float = 1.0
    transport: httpx.BaseTransport | None = None
    sleep: Callable[[float], None] = time.sleep
    _http: httpx.Client = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._http = httpx.Client(
            base_url=self.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout_s,
            transport=self.transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MachinesClient":
        return cls(
            base_url=settings.fly_api_hostname,
            token=settings.require_fly_token(),
            timeout_s=settings.http_timeout_s,
            retry_attempts=settings.retry_attempts,
            retry_backoff_s=settings.retry_backoff_s,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "MachinesClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- transport --------------------------------------------------------

    def _request(
        self,
        call: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        idempotent: bool = False,
        timeout: float | None = None,
    ) -> httpx.Response:
        attempts = self.retry_attempts if idempotent else 1
        last: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                resp = self._http.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                )
            except httpx.TransportError as e:
                last = TransportError(call, f"{type(e).__name__}: {e}")
            else:
                if resp.status_code in RETRYABLE_STATUS and attempt < attempts:
                    last = RemoteRejectionError(call, resp.status_code, resp.text)
                else:
                    return resp
            if attempt < attempts:
                delay = self.retry_backoff_s * (2 ** (attempt - 1))
                log_event("WARN", f"{call} failed ({last}); retrying in {delay:g}s")
                self.sleep(delay)
        assert last is not None
        raise last

    @staticmethod
    def _check(call: str, resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            raise RemoteRejectionError(call, resp.status_code, resp.text)
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            raise RemoteRejectionError(call, resp.status_code, resp.text) from None
        if isinstance(data, dict) and data.get("error"):
            raise RemoteRejectionError(call, resp.status_code, resp.text)
        return data

    # -- apps -------------------------------------------------------------

    def get_app(self, app: str) -> str | None:
        """Return the app id, or None if the app does not exist."""
        call = f"get app {app}"
        resp = self._request(call, "GET", f"/v1/apps/{app}", idempotent=True)
        if resp.status_code == 404:
            return None
        return self._check(call, resp)["id"]

    def create_app(self, app: str, org: str) -> str:
        call = f"create app {app}"
        resp = self._request(call, "POST", "/v1/apps", json={"app_name": app, "org_slug": org})
        data = self._check(call, resp)
        # The create endpoint answers 201 with an empty body on some API versions.
        return (data or {}).get("id") or app

    def ensure_app(self, app: str, org: str) -> str:
        app_id = self.get_app(app)
        if app_id is not None:
            return app_id
        log_event("INFO", f"App {app} not found. Creating...")
        return self.create_app(app, org)

    # -- machines ---------------------------------------------------------

    def list_instances(self, app: str) -> list[RemoteInstance]:
        call = f"list machines of {app}"
        data = self._check(call, self._request(call, "GET", f"/v1/apps/{app}/machines", idempotent=True))
        return [RemoteInstance.from_api(m) for m in data or []]

    def create_instance(self, app: str, name: str, config: dict[str, Any]) -> RemoteInstance:
        call = f"create machine {name}"
        resp = self._request(call, "POST", f"/v1/apps/{app}/machines", json={"name": name, "config": config})
        return RemoteInstance.from_api(self._check(call, resp))

    def update_instance(self, app: str, instance_id: str, config: dict[str, Any]) -> RemoteInstance:
        call = f"update machine {instance_id}"
        resp = self._request(call, "POST", f"/v1/apps/{app}/machines/{instance_id}", json={"config": config})
        return RemoteInstance.from_api(self._check(call, resp))

    def wait_ready(
        self,
        app: str,
        instance_id: str,
        timeout_s: float,
        cancel: threading.Event | None = None,
    ) -> None:
        """Block until the machine reports ``started``.

        Raises ReadinessTimeout once ``timeout_s`` elapses, RunCancelled if
        ``cancel`` is set between polls.
        """
        call = f"wait for machine {instance_id}"
        deadline = time.monotonic() + timeout_s
        while True:
            if cancel is not None and cancel.is_set():
                raise RunCancelled(f"{call}: cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(instance_id, timeout_s)
            per_call = max(1, min(MAX_WAIT_CALL_S, int(remaining)))
            resp = self._request(
                call,
                "GET",
                f"/v1/apps/{app}/machines/{instance_id}/wait",
                params={"state": "started", "timeout": per_call},
                idempotent=True,
                timeout=per_call + self.timeout_s,
            )
            if resp.status_code == 408:
                continue
            self._check(call, resp)
            return

    def exec_command(self, app: str, instance_id: str, argv: list[str], timeout_s: int = 30) -> ExecResult:
        call = f"exec on machine {instance_id}"
        resp = self._request(
            call,
            "POST",
            f"/v1/apps/{app}/machines/{instance_id}/exec",
            json={"command": argv, "timeout": timeout_s},
            timeout=timeout_s + self.timeout_s,
        )
        data = self._check(call, resp) or {}
        code = data.get("exit_code")
        signal = data.get("exit_signal")
        return ExecResult(
            exit_code=int(code) if code is not None else None,
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            exit_signal=int(signal) if signal else None,
        )
