import itertools
import os as _os
import sys
import threading
import textwrap

import pytest

# Ensure project root is importable (so `import bcds` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from bcds.errors import ImageError, RemoteRejectionError  # noqa: E402
from bcds.machines import ExecResult, RemoteInstance  # noqa: E402
from bcds.settings import FlyConfig, ProjectConfig  # noqa: E402


class FakeMachines:
    """In-memory stand-in for the Fly Machines API. Records every call."""

    def __init__(self, existing=None):
        self._ids = (f"m{n:04d}" for n in itertools.count(1))
        self.machines = {m.name: m for m in (existing or [])}
        self.calls = []
        self.apps = set()
        self.fail_create = set()
        self.exec_result = ExecResult(exit_code=0, stdout="")
        self.exec_argv = []
        self.lock = threading.Lock()

    def _record(self, *call):
        with self.lock:
            self.calls.append(call)

    def count(self, kind):
        return sum(1 for c in self.calls if c[0] == kind)

    def ensure_app(self, app, org):
        self._record("ensure_app", app, org)
        self.apps.add(app)
        return app

    def list_instances(self, app):
        self._record("list", app)
        return list(self.machines.values())

    def create_instance(self, app, name, config):
        self._record("create", name, config)
        if name in self.fail_create:
            raise RemoteRejectionError(f"create machine {name}", 422, '{"error":"boom"}')
        m = RemoteInstance(id=next(self._ids), name=name, state="started", image=config.get("image"))
        with self.lock:
            self.machines[name] = m
        return m

    def update_instance(self, app, instance_id, config):
        self._record("update", instance_id, config)
        for name, m in self.machines.items():
            if m.id == instance_id:
                updated = RemoteInstance(id=m.id, name=name, state="started", image=config.get("image"))
                with self.lock:
                    self.machines[name] = updated
                return updated
        raise RemoteRejectionError(f"update machine {instance_id}", 404, '{"error":"not found"}')

    def wait_ready(self, app, instance_id, timeout_s, cancel=None):
        self._record("wait", instance_id)

    def exec_command(self, app, instance_id, argv, timeout_s=30):
        self._record("exec", instance_id)
        self.exec_argv.append(argv)
        return self.exec_result


class FakeBuilder:
    def __init__(self):
        self.built = []
        self.pushed = []
        self.fail_build = set()
        self.lock = threading.Lock()

    def build(self, context, image):
        if image.tag in self.fail_build:
            raise ImageError(f"build {image.ref}: exit 1")
        with self.lock:
            self.built.append(image.ref)

    def push(self, image):
        with self.lock:
            self.pushed.append(image.ref)


CHALLENGE_TOML = """\
name = "{title}"
author = "tester"
description = "{description}"
flag = "lactf{{test}}"

[containers.main]
build = "."
limits = {{ cpu = 1, memory = {memory} }}
ports = [{target}]
"""


def write_challenge(root, service_id, expose=None, memory=512, target=8080, description="hi", extra=""):
    chall_dir = root.joinpath(*service_id.split("/"))
    chall_dir.mkdir(parents=True, exist_ok=True)
    body = CHALLENGE_TOML.format(
        title=service_id.split("/")[1], description=description, memory=memory, target=target
    )
    if expose:
        body += "\n[expose.main]\n" + "\n".join(f"{k} = {v!r}" if isinstance(v, str) else f"{k} = {v}" for k, v in expose.items()) + "\n"
    body += textwrap.dedent(extra)
    # TOML strings are double quoted
    (chall_dir / "challenge.toml").write_text(body.replace("'", '"'), encoding="utf-8")
    (chall_dir / "Dockerfile").write_text("FROM alpine\n", encoding="utf-8")
    return chall_dir


@pytest.fixture
def chall_root(tmp_path):
    root = tmp_path / "challs"
    root.mkdir()
    return root


@pytest.fixture
def project(chall_root):
    return ProjectConfig(
        fly=FlyConfig(org="les-amateurs", app_name="bcds-test"),
        chall_root=chall_root,
        hostname="chall.example.com",
    )


@pytest.fixture
def machines():
    return FakeMachines()


@pytest.fixture
def builder():
    return FakeBuilder()
