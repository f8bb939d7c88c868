from __future__ import annotations

import copy
import json
from typing import Any, Mapping

from .errors import RemoteRejectionError
from .events import log_event
from .machines import ExecResult
from .reconciler import InstanceAPI
from .routing import RoutingTables

HTTP_SERVER = "bear-cds-http"
ADMIN_LOAD_URL = "localhost:2019/load"


def deep_merge(base: Any, override: Any) -> Any:
    """Merge ``override`` onto ``base`` and return the result.

    Objects merge key by key, recursively. Anything else in ``override``
    (scalars, arrays, null) replaces the base value wholesale. Inputs are not
    mutated.
    """
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        out = {k: copy.deepcopy(v) for k, v in base.items()}
        for k, v in override.items():
            out[k] = deep_merge(out[k], v) if k in out else copy.deepcopy(v)
        return out
    return copy.deepcopy(override)


def http_routes(tables: RoutingTables, hostname: str) -> list[dict[str, Any]]:
    routes: list[dict[str, Any]] = []
    for sub in sorted(tables.http):
        routes.append(
            {
                "match": [{"host": [f"{sub}.{hostname}"]}],
                "handle": [{"handler": "reverse_proxy", "upstreams": [{"dial": tables.http[sub]}]}],
            }
        )
    # Terminal catch-all; must stay last.
    routes.append({"handle": [{"handler": "static_response", "status_code": 404, "body": "Not Found"}]})
    return routes


def tcp_servers(tables: RoutingTables) -> dict[str, Any]:
    servers: dict[str, Any] = {}
    for port in tables.tcp_ports:
        route = tables.tcp[port]
        servers[route.instance_name] = {
            "listen": [f"0.0.0.0:{port}"],
            "routes": [{"handle": [{"handler": "proxy", "upstreams": [{"dial": [route.dial]}]}]}],
        }
    return servers


def compose_document(tables: RoutingTables, hostname: str) -> dict[str, Any]:
    return {
        "apps": {
            "layer4": {"servers": tcp_servers(tables)},
            "http": {
                "servers": {
                    HTTP_SERVER: {
                        "listen": [":80"],
                        "routes": [
                            {
                                "match": [{"host": [f"*.{hostname}"]}],
                                "handle": [{"handler": "subroute", "routes": http_routes(tables, hostname)}],
                            }
                        ],
                    }
                }
            },
        }
    }


def load_command(document: Mapping[str, Any]) -> list[str]:
    return [
        "curl",
        "-sS",
        "--fail-with-body",
        "-X",
        "POST",
        ADMIN_LOAD_URL,
        "-H",
        "Content-Type: application/json",
        "-d",
        json.dumps(document, separators=(",", ":")),
    ]


class ProxyConfigComposer:
    """Renders routing tables to Caddy JSON and loads it into the ingress."""

    def __init__(self, api: InstanceAPI, app: str, hostname: str, override: Mapping[str, Any] | None = None):
        self.api = api
        self.app = app
        self.hostname = hostname
        self.override = dict(override or {})

    def compose(self, tables: RoutingTables) -> dict[str, Any]:
        return deep_merge(compose_document(tables, self.hostname), self.override)

    def push(self, ingress_id: str, document: Mapping[str, Any]) -> ExecResult:
        # The admin endpoint only listens on loopback inside the ingress machine.
        result = self.api.exec_command(self.app, ingress_id, load_command(document))
        if not result.ok:
            raise RemoteRejectionError(
                f"load caddy config on {ingress_id} ({result.status()})", None, result.output()
            )
        log_event("INFO", "Caddy config loaded")
        if result.output():
            log_event("DEBUG", result.output())
        return result
