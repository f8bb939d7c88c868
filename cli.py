from __future__ import annotations

import argparse
import json
import signal
import sys

from bcds import catalog
from bcds.deploy import DeploymentOrchestrator, build_all, describe_selection
from bcds.docker_ops import ImageBuilder
from bcds.errors import BcdsError, PartialBatchFailure
from bcds.events import configure_logging
from bcds.machines import MachinesClient
from bcds.scoreboard import RctfClient, ctftime_standings
from bcds.settings import Settings, load_env_file, load_project_config


def _err(msg: str) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)


def cmd_list(args, settings: Settings) -> int:
    cfg = load_project_config(args.config)
    for sid in catalog.list_service_ids(cfg.chall_root):
        print(sid)
    return 0


def cmd_build(args, settings: Settings) -> int:
    cfg = load_project_config(args.config)
    services = (
        catalog.get_services(cfg.chall_root, args.challs) if args.challs else catalog.list_services(cfg.chall_root)
    )
    print(f"Building {describe_selection([s.id for s in services])}")
    builder = ImageBuilder(verbose=settings.verbose_docker)
    failures = build_all(services, builder, cfg.registry_repo, workers=args.workers or settings.workers)
    if failures:
        raise PartialBatchFailure(failures)
    return 0


def cmd_deploy(args, settings: Settings) -> int:
    cfg = load_project_config(args.config)
    with MachinesClient.from_settings(settings) as api:
        orch = DeploymentOrchestrator(
            cfg,
            api,
            ImageBuilder(registry_password=settings.fly_api_token, verbose=settings.verbose_docker),
            workers=args.workers or settings.workers,
            ready_timeout_s=settings.ready_timeout_s,
        )

        # First Ctrl-C stops new remote mutations; in-flight calls still finish.
        def _on_sigint(signum, frame):
            orch.cancel()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        previous = signal.signal(signal.SIGINT, _on_sigint)
        try:
            report = orch.run(args.challs or None)
        finally:
            signal.signal(signal.SIGINT, previous)

    print(f"Deployed {len(report.resolved)} container(s): {len(report.created)} created, {len(report.updated)} updated")
    for name in report.orphans:
        print(f"warning: machine {name} is not in the catalog and was left running", file=sys.stderr)
    return 0


def cmd_sync(args, settings: Settings) -> int:
    cfg = load_project_config(args.config)
    if cfg.rctf is None:
        _err("No [rctf] section in the config file.")
        return 1
    if not settings.rctf_admin_token:
        _err("RCTF_ADMIN_TOKEN is not set.")
        return 1
    services = (
        catalog.get_services(cfg.chall_root, args.challs) if args.challs else catalog.list_services(cfg.chall_root)
    )
    client = RctfClient(cfg.rctf.url, settings.rctf_admin_token, timeout_s=settings.http_timeout_s)
    try:
        for s in services:
            client.update_challenge(s, cfg.hostname)
    finally:
        client.close()
    return 0


def cmd_leaderboard(args, settings: Settings) -> int:
    cfg = load_project_config(args.config)
    if cfg.rctf is None:
        _err("No [rctf] section in the config file.")
        return 1
    client = RctfClient(cfg.rctf.url, settings.rctf_admin_token, timeout_s=settings.http_timeout_s)
    try:
        entries = client.fetch_leaderboard()
    finally:
        client.close()
    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(ctftime_standings(entries), f, indent=2)
    print(f"Saved {len(entries)} team(s) to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="---les amateurs challenge deployment system---")
    p.add_argument("-c", "--config", default="bear.toml", help="Project config file")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_list = sub.add_parser("list", help="List all challenges")
    s_list.set_defaults(func=cmd_list)

    s_build = sub.add_parser("build", help="Build challenge images locally")
    s_build.add_argument("--workers", type=int, default=None, help="Max number of images to build in parallel")
    s_build.add_argument("challs", nargs="*", help="Challenges to build (category/name); default all")
    s_build.set_defaults(func=cmd_build)

    s_deploy = sub.add_parser("deploy", help="Deploy challenges to fly.io")
    s_deploy.add_argument("--workers", type=int, default=None, help="Max number of containers handled in parallel")
    s_deploy.add_argument("challs", nargs="*", help="Challenges to deploy (category/name); default all")
    s_deploy.set_defaults(func=cmd_deploy)

    s_sync = sub.add_parser("sync", help="Push challenge metadata to rCTF")
    s_sync.add_argument("challs", nargs="*", help="Challenges to sync (category/name); default all")
    s_sync.set_defaults(func=cmd_sync)

    s_lb = sub.add_parser("leaderboard", help="Fetch the leaderboard and save it to ctftime.json")
    s_lb.add_argument("-o", "--output", default="ctftime.json", help="Output file")
    s_lb.set_defaults(func=cmd_leaderboard)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_env_file(args.config)
    settings = Settings.from_env()
    configure_logging("DEBUG" if args.verbose else settings.log_level)
    try:
        return args.func(args, settings)
    except BcdsError as e:
        _err(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
