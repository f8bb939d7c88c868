from __future__ import annotations

from typing import Any

import httpx

from .catalog import HttpExposure, Service
from .errors import RemoteRejectionError, TransportError
from .events import log_event

CONNECTION_PLACEHOLDER = "{{ connection }}"
LEADERBOARD_PAGE = 100


def connection_info(service: Service, hostname: str) -> list[str]:
    """Human readable ways to reach a challenge, one per exposure."""
    out = []
    for name in sorted(service.expose):
        exp = service.expose[name]
        if isinstance(exp, HttpExposure):
            out.append(f"https://{exp.subdomain}.{hostname}")
        else:
            out.append(f"nc {hostname} {exp.port}")
    return out


def render_description(service: Service, hostname: str) -> str:
    if CONNECTION_PLACEHOLDER not in service.description:
        return service.description
    info = "\n".join(f"`{line}`" for line in connection_info(service, hostname))
    return service.description.replace(CONNECTION_PLACEHOLDER, info)


def rctf_challenge_id(service: Service) -> str:
    return "bcds-" + service.id.replace("/", "-")


class RctfClient:
    """rCTF API: admin challenge updates and the public leaderboard."""

    def __init__(
        self, url: str, token: str | None = None, timeout_s: float = 30.0, transport: httpx.BaseTransport | None = None
    ):
        self._http = httpx.Client(
            base_url=url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"} if token else {},
            timeout=timeout_s,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def payload(self, service: Service, hostname: str) -> dict[str, Any]:
        return {
            "data": {
                "author": service.author,
                "category": service.category,
                "description": render_description(service, hostname),
                "flag": service.flag,
                "name": service.name,
                "points": {"min": 100, "max": 500},
                "tiebreakEligible": True,
            }
        }

    def update_challenge(self, service: Service, hostname: str) -> None:
        cid = rctf_challenge_id(service)
        call = f"update rctf challenge {cid}"
        try:
            resp = self._http.put(f"/api/v1/admin/challs/{cid}", json=self.payload(service, hostname))
        except httpx.TransportError as e:
            raise TransportError(call, f"{type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise RemoteRejectionError(call, resp.status_code, resp.text)
        log_event("INFO", f"Synced to rCTF as {cid}", service.id)

    def fetch_leaderboard(self) -> list[dict[str, Any]]:
        """Every leaderboard entry, in rank order, following rCTF's pagination."""
        call = "fetch rctf leaderboard"
        entries: list[dict[str, Any]] = []
        while True:
            try:
                resp = self._http.get(
                    "/api/v1/leaderboard/now", params={"limit": LEADERBOARD_PAGE, "offset": len(entries)}
                )
            except httpx.TransportError as e:
                raise TransportError(call, f"{type(e).__name__}: {e}") from e
            if resp.status_code >= 400:
                raise RemoteRejectionError(call, resp.status_code, resp.text)
            data = resp.json().get("data") or {}
            page = data.get("leaderboard") or []
            entries.extend(page)
            if not page or len(entries) >= int(data.get("total", 0)):
                break
        log_event("INFO", f"Fetched {len(entries)} leaderboard entries")
        return entries


def ctftime_standings(entries: list[dict[str, Any]]) -> dict[str, Any]:
    """CTFtime's scoreboard feed format."""
    return {
        "standings": [
            {"pos": pos, "team": e["name"], "score": e["score"]} for pos, e in enumerate(entries, start=1)
        ]
    }
