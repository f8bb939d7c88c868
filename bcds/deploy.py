from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Protocol, Sequence, TypeVar

from . import catalog
from .catalog import INGRESS_NAME, Service
from .docker_ops import ImageRef
from .errors import ConfigurationError, ContainerFailure, PartialBatchFailure, RunCancelled
from .events import log_event
from .machines import RemoteInstance
from .proxy import ProxyConfigComposer
from .reconciler import ImageBuilderLike, InstanceAPI, MachineReconciler, machine_config, validate_memory
from .routing import ResolvedContainer, RoutingTables, build_routing_tables, check_exposures
from .settings import ProjectConfig

T = TypeVar("T")


class RunState(str, Enum):
    IDLE = "Idle"
    ENSURING_APPLICATION = "EnsuringApplication"
    BUILDING_IMAGES = "BuildingImages"
    PUSHING_IMAGES = "PushingImages"
    RECONCILING_INSTANCES = "ReconcilingInstances"
    ENSURING_INGRESS = "EnsuringIngress"
    COMPOSING_PROXY_CONFIG = "ComposingProxyConfig"
    PUSHING_PROXY_CONFIG = "PushingProxyConfig"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class Job:
    """One container of one selected challenge."""

    service: Service
    container: str
    image: ImageRef

    @property
    def instance_name(self) -> str:
        return self.service.instance_name(self.container)


@dataclass
class RunReport:
    state: RunState = RunState.IDLE
    states: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    services: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    resolved: list[ResolvedContainer] = field(default_factory=list)
    failures: list[ContainerFailure] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    tables: RoutingTables | None = None
    document: dict[str, Any] | None = None
    error: BaseException | None = None


class ApplicationAPI(InstanceAPI, Protocol):
    def ensure_app(self, app: str, org: str) -> str: ...


def describe_selection(ids: Sequence[str]) -> str:
    if len(ids) == 1:
        return ids[0]
    if len(ids) == 2:
        return f"{ids[0]} and {ids[1]}"
    return f"{ids[0]}, {ids[1]} and {ids[2] if len(ids) == 3 else 'more'}"


class DeploymentOrchestrator:
    """Runs one deployment: build, push, reconcile, ingress, proxy config.

    Containers are processed on a bounded worker pool. A container that fails
    does not stop the others; the run still ends Failed with every failure
    listed, and the proxy config is only pushed once every container has a
    machine.
    """

    def __init__(
        self,
        config: ProjectConfig,
        api: ApplicationAPI,
        builder: ImageBuilderLike,
        workers: int = 4,
        ready_timeout_s: float = 300.0,
    ):
        self.config = config
        self.api = api
        self.builder = builder
        self.workers = max(1, int(workers))
        self.app = config.fly.app_name
        self.repo = config.registry_repo
        self._cancel = threading.Event()
        self.reconciler = MachineReconciler(api, self.app, ready_timeout_s=ready_timeout_s, cancel=self._cancel)
        self.composer = ProxyConfigComposer(api, self.app, config.hostname, config.caddy)
        self.report = RunReport()

    # -- control ----------------------------------------------------------

    def cancel(self) -> None:
        """Stop issuing new remote mutations. In-flight calls are left to finish."""
        if not self._cancel.is_set():
            log_event("WARN", "Cancellation requested; waiting for in-flight calls")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _enter(self, state: RunState) -> None:
        self.report.state = state
        self.report.states.append(state)
        log_event("INFO", f"-> {state.value}")

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise RunCancelled("Deployment cancelled.")

    # -- selection / preflight -------------------------------------------

    def select(self, service_ids: Iterable[str] | None) -> list[Service]:
        root = self.config.chall_root
        ids = list(service_ids or [])
        services = catalog.get_services(root, ids) if ids else catalog.list_services(root)
        if not services:
            raise ConfigurationError(f"No challenges found under {root}.")
        return services

    def preflight(self, selected: list[Service], full_catalog: list[Service]) -> list[Job]:
        jobs: list[Job] = []
        seen: dict[str, str] = {}
        for s in selected:
            for name, container in s.containers.items():
                try:
                    validate_memory(container.limits.memory)
                except ConfigurationError as e:
                    raise ConfigurationError(f"{s.id} ({name}): {e}") from e
                inst = s.instance_name(name)
                if inst == INGRESS_NAME or inst in seen:
                    other = seen.get(inst, "the ingress")
                    raise ConfigurationError(f"Ambiguous machine name '{inst}' for {s.id} ({name}) and {other}.")
                seen[inst] = f"{s.id} ({name})"
                jobs.append(Job(service=s, container=name, image=ImageRef(self.repo, inst)))
        check_exposures(full_catalog)
        return jobs

    # -- fan-out ----------------------------------------------------------

    def _fan_out(self, stage: str, jobs: list[Job], fn: Callable[[Job], T]) -> list[tuple[Job, T]]:
        """Run ``fn`` per job on the pool; failures are recorded, not raised."""

        def guarded(job: Job) -> T:
            if self._cancel.is_set():
                raise RunCancelled(f"cancelled before {stage}")
            return fn(job)

        done: list[tuple[Job, T]] = []
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=f"bcds-{stage}") as pool:
            futures = [(job, pool.submit(guarded, job)) for job in jobs]
            for job, fut in futures:
                try:
                    done.append((job, fut.result()))
                except Exception as e:
                    self._fail(job, stage, e)
        return done

    def _fail(self, job: Job, stage: str, error: BaseException) -> None:
        failure = ContainerFailure(job.service.id, job.container, stage, error)
        self.report.failures.append(failure)
        log_event("ERROR", f"{stage} failed: {error}", job.service.id, job.container)

    # -- stages -----------------------------------------------------------

    def _build(self, job: Job) -> None:
        self.builder.build(job.service.build_context(job.container), job.image)

    def _reconcile(self, snapshot: dict[str, RemoteInstance], job: Job) -> ResolvedContainer:
        container = job.service.containers[job.container]
        config = machine_config(job.image.ref, container.limits, container.env)
        result = self.reconciler.reconcile(snapshot, job.instance_name, config, job.service.id, job.container)
        (self.report.created if result.created else self.report.updated).append(job.instance_name)
        return ResolvedContainer(
            service_id=job.service.id,
            container=job.container,
            instance_name=job.instance_name,
            instance_id=result.instance.id,
            exposure=job.service.expose.get(job.container),
        )

    def _resolve_unselected(
        self, full_catalog: list[Service], selected_ids: set[str], snapshot: dict[str, RemoteInstance]
    ) -> list[ResolvedContainer]:
        """Keep routes of challenges not in this run, using their existing machines."""
        out: list[ResolvedContainer] = []
        for s in full_catalog:
            if s.id in selected_ids:
                continue
            for name, exp in s.expose.items():
                inst = s.instance_name(name)
                machine = snapshot.get(inst)
                if machine is None:
                    log_event("WARN", "not deployed yet; its route is left out", s.id, name)
                    continue
                out.append(ResolvedContainer(s.id, name, inst, machine.id, exp))
        return out

    def _orphans(self, full_catalog: list[Service], snapshot: dict[str, RemoteInstance]) -> list[str]:
        known = {s.instance_name(c) for s in full_catalog for c in s.containers} | {INGRESS_NAME}
        return sorted(name for name in snapshot if name not in known)

    # -- run --------------------------------------------------------------

    def run(self, service_ids: Iterable[str] | None = None) -> RunReport:
        """Run one deployment. Report and cancellation are fresh for every call."""
        self.report = RunReport()
        self._cancel = threading.Event()
        self.reconciler.cancel = self._cancel
        try:
            self._run(service_ids)
        except BaseException as e:
            self.report.error = e
            self._enter(RunState.FAILED)
            raise
        return self.report

    def _run(self, service_ids: Iterable[str] | None) -> None:
        selected = self.select(service_ids)
        full_catalog = catalog.list_services(self.config.chall_root) if service_ids else selected
        jobs = self.preflight(selected, full_catalog)
        self.report.services = [s.id for s in selected]
        log_event("INFO", f"Deploying {describe_selection(self.report.services)}")

        self._enter(RunState.ENSURING_APPLICATION)
        self.api.ensure_app(self.app, self.config.fly.org)

        self._enter(RunState.BUILDING_IMAGES)
        built = [job for job, _ in self._fan_out("build", jobs, self._build)]

        self._enter(RunState.PUSHING_IMAGES)
        pushed = [job for job, _ in self._fan_out("push", built, lambda j: self.builder.push(j.image))]

        self._enter(RunState.RECONCILING_INSTANCES)
        # One read, before the parallel pass.
        snapshot = self.reconciler.snapshot()
        resolved = [r for _, r in self._fan_out("reconcile", pushed, lambda j: self._reconcile(snapshot, j))]
        self.report.resolved = resolved

        self.report.orphans = self._orphans(full_catalog, snapshot)
        for name in self.report.orphans:
            log_event("WARN", f"Machine {name} is not part of the catalog; it is left running")

        # Barrier: the proxy config needs every container resolved.
        if self.report.failures:
            raise PartialBatchFailure(self.report.failures)
        self._check_cancelled()

        selected_ids = {s.id for s in selected}
        routed = resolved + self._resolve_unselected(full_catalog, selected_ids, snapshot)
        tables = build_routing_tables(routed, self.app)
        self.report.tables = tables

        # The ingress must listen on every TCP port before Caddy is told to bind them.
        self._enter(RunState.ENSURING_INGRESS)
        ingress = self.reconciler.ensure_ingress(snapshot, self.builder, self.repo)
        ingress = self.reconciler.update_ingress(ingress, self.repo, tables.tcp_ports)

        self._enter(RunState.COMPOSING_PROXY_CONFIG)
        self.report.document = self.composer.compose(tables)

        self._enter(RunState.PUSHING_PROXY_CONFIG)
        self.composer.push(ingress.id, self.report.document)

        self._enter(RunState.DONE)


def build_all(
    services: list[Service],
    builder: ImageBuilderLike,
    repo: str,
    workers: int = 4,
) -> list[ContainerFailure]:
    """Build (without pushing) every container of ``services`` on a bounded pool."""
    jobs = [Job(s, name, ImageRef(repo, s.instance_name(name))) for s in services for name in s.containers]
    failures: list[ContainerFailure] = []
    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="bcds-build") as pool:
        futures = [(job, pool.submit(builder.build, job.service.build_context(job.container), job.image)) for job in jobs]
        for job, fut in futures:
            try:
                fut.result()
            except Exception as e:
                failures.append(ContainerFailure(job.service.id, job.container, "build", e))
                log_event("ERROR", f"build failed: {e}", job.service.id, job.container)
    return failures
