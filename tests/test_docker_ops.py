import pytest
from docker.errors import APIError

from bcds.docker_ops import REGISTRY_USER, ImageBuilder, ImageRef, _drain
from bcds.errors import ImageError

IMAGE = ImageRef("registry.fly.io/bcds-test", "crypto-aesy-main")


class StubAPI:
    def __init__(self, build_stream=(), push_stream=(), error=None):
        self.build_stream = list(build_stream)
        self.push_stream = list(push_stream)
        self.error = error
        self.calls = []

    def build(self, **kw):
        self.calls.append(("build", kw))
        if self.error:
            raise self.error
        return iter(self.build_stream)

    def push(self, repo, **kw):
        self.calls.append(("push", repo, kw))
        if self.error:
            raise self.error
        return iter(self.push_stream)


class StubClient:
    def __init__(self, api):
        self.api = api


@pytest.fixture
def context(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM alpine\n")
    return tmp_path


def test_drain_consumes_progress():
    _drain([{"stream": "Step 1/2"}, {"status": "Pushed"}, {"aux": {"ID": "sha256:x"}}], "build x", verbose=True)


def test_drain_prefers_error_detail():
    stream = [{"stream": "Step 1/2"}, {"error": "short", "errorDetail": {"message": "returned a non-zero code: 1\n"}}]
    with pytest.raises(ImageError, match="build x: returned a non-zero code: 1$"):
        _drain(stream, "build x")


def test_drain_stops_at_first_error():
    seen = []

    def stream():
        for chunk in ({"error": "denied"}, {"stream": "never"}):
            seen.append(chunk)
            yield chunk

    with pytest.raises(ImageError, match="denied"):
        _drain(stream(), "push x")
    assert len(seen) == 1


def test_build_success(context):
    api = StubAPI(build_stream=[{"stream": "Successfully built abc"}])
    ImageBuilder(client=StubClient(api)).build(context, IMAGE)
    (kind, kw), = api.calls
    assert kind == "build"
    assert kw["path"] == str(context)
    assert kw["tag"] == IMAGE.ref
    assert kw["decode"] is True


def test_build_failure_chunk(context):
    api = StubAPI(build_stream=[{"errorDetail": {"message": "COPY failed"}, "error": "COPY failed"}])
    with pytest.raises(ImageError, match="COPY failed"):
        ImageBuilder(client=StubClient(api)).build(context, IMAGE)


def test_build_without_dockerfile(tmp_path):
    api = StubAPI()
    with pytest.raises(ImageError, match="no Dockerfile"):
        ImageBuilder(client=StubClient(api)).build(tmp_path, IMAGE)
    assert api.calls == []


def test_build_api_error_is_an_image_error(context):
    api = StubAPI(error=APIError("daemon went away"))
    with pytest.raises(ImageError, match="daemon went away") as exc:
        ImageBuilder(client=StubClient(api)).build(context, IMAGE)
    assert isinstance(exc.value.__cause__, APIError)


def test_push_sends_registry_credentials():
    api = StubAPI(push_stream=[{"status": "Pushing"}, {"status": "crypto-aesy-main: digest: sha256:abc"}])
    ImageBuilder(client=StubClient(api), registry_password="fly-token").push(IMAGE)
    (kind, repo, kw), = api.calls
    assert repo == "registry.fly.io/bcds-test"
    assert kw["tag"] == "crypto-aesy-main"
    assert kw["auth_config"] == {"username": REGISTRY_USER, "password": "fly-token"}
    assert REGISTRY_USER == "x"


def test_push_without_password_uses_local_credentials():
    api = StubAPI()
    ImageBuilder(client=StubClient(api)).push(IMAGE)
    assert api.calls[0][2]["auth_config"] is None


def test_push_failure_chunk():
    api = StubAPI(push_stream=[{"status": "Preparing"}, {"error": "unauthorized: authentication required"}])
    with pytest.raises(ImageError, match="push registry.fly.io/bcds-test:crypto-aesy-main: unauthorized"):
        ImageBuilder(client=StubClient(api), registry_password="bad").push(IMAGE)


def test_push_api_error_is_an_image_error():
    api = StubAPI(error=APIError("connection refused"))
    with pytest.raises(ImageError, match="connection refused"):
        ImageBuilder(client=StubClient(api)).push(IMAGE)


def test_build_and_push(context):
    api = StubAPI()
    ImageBuilder(client=StubClient(api)).build_and_push(context, IMAGE)
    assert [c[0] for c in api.calls] == ["build", "push"]
