from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .catalog import HttpExposure, Service, TcpExposure
from .errors import ExposureConflict

# 80/443 are the ingress HTTP listeners, 2019 is the Caddy admin endpoint.
RESERVED_TCP_PORTS = frozenset({80, 443, 2019})


def dial_target(instance_id: str, app: str, port: int) -> str:
    """Private 6PN address of a machine; only the ingress can reach it."""
    return f"{instance_id}.vm.{app}.internal:{int(port)}"


@dataclass(frozen=True)
class ResolvedContainer:
    """A container after reconciliation: its exposure plus the machine serving it."""

    service_id: str
    container: str
    instance_name: str
    instance_id: str
    exposure: TcpExposure | HttpExposure | None = None

    @property
    def label(self) -> str:
        return f"{self.service_id}:{self.container}"


@dataclass(frozen=True)
class TcpRoute:
    instance_name: str
    dial: str


@dataclass
class RoutingTables:
    http: dict[str, str] = field(default_factory=dict)  # subdomain -> dial
    tcp: dict[int, TcpRoute] = field(default_factory=dict)  # public port -> route

    @property
    def tcp_ports(self) -> list[int]:
        return sorted(self.tcp)


class ExposureRouter:
    """Accumulates exposures into HTTP and TCP tables, rejecting collisions."""

    def __init__(self, app: str):
        self.app = app
        self.tables = RoutingTables()
        self._http_owner: dict[str, str] = {}
        self._tcp_owner: dict[int, str] = {}

    def add(self, resolved: ResolvedContainer) -> None:
        exp = resolved.exposure
        if exp is None:
            return
        dial = dial_target(resolved.instance_id, self.app, exp.target)
        if isinstance(exp, HttpExposure):
            owner = self._http_owner.get(exp.subdomain)
            if owner is not None:
                raise ExposureConflict("HTTP subdomain", exp.subdomain, owner, resolved.service_id)
            self._http_owner[exp.subdomain] = resolved.service_id
            self.tables.http[exp.subdomain] = dial
        else:
            if exp.port in RESERVED_TCP_PORTS:
                raise ExposureConflict("TCP port", exp.port, "ingress", resolved.service_id)
            owner = self._tcp_owner.get(exp.port)
            if owner is not None:
                raise ExposureConflict("TCP port", exp.port, owner, resolved.service_id)
            self._tcp_owner[exp.port] = resolved.service_id
            self.tables.tcp[exp.port] = TcpRoute(instance_name=resolved.instance_name, dial=dial)


def build_routing_tables(resolved: Iterable[ResolvedContainer], app: str) -> RoutingTables:
    router = ExposureRouter(app)
    for r in resolved:
        router.add(r)
    return router.tables


def check_exposures(services: Iterable[Service]) -> None:
    """Collision check over declarations alone, before any machine exists."""
    placeholders = (
        ResolvedContainer(s.id, name, s.instance_name(name), "-", exp)
        for s in services
        for name, exp in s.expose.items()
    )
    build_routing_tables(placeholders, app="-")
