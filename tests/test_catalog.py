import itertools
import random

import pytest

from bcds import catalog
from bcds.catalog import HttpExposure, NamedAttachment, TcpExposure, instance_name
from bcds.errors import ConfigurationError, ServiceNotFound
from conftest import write_challenge


def test_list_services_derives_ids_from_directories(chall_root):
    write_challenge(chall_root, "crypto/aesy", expose={"kind": "http", "subdomain": "aesy", "target": 8080})
    write_challenge(chall_root, "pwn/heap", expose={"kind": "tcp", "port": 9001, "target": 1337})
    (chall_root / "misc" / "notes").mkdir(parents=True)  # no challenge.toml -> ignored

    services = catalog.list_services(chall_root)
    assert [s.id for s in services] == ["crypto/aesy", "pwn/heap"]
    assert catalog.list_service_ids(chall_root) == ["crypto/aesy", "pwn/heap"]

    aesy, heap = services
    assert aesy.category == "crypto"
    assert aesy.containers["main"].limits.memory == 512
    assert isinstance(aesy.expose["main"], HttpExposure)
    assert isinstance(heap.expose["main"], TcpExposure)
    assert heap.expose["main"].port == 9001
    assert aesy.build_context("main") == (chall_root / "crypto" / "aesy").resolve()


def test_exposure_requires_explicit_kind(chall_root):
    write_challenge(chall_root, "web/x", expose={"subdomain": "x", "target": 80})
    with pytest.raises(ConfigurationError):
        catalog.list_services(chall_root)


def test_expose_for_undeclared_container_is_rejected(chall_root):
    write_challenge(
        chall_root,
        "web/x",
        extra="""
        [expose.db]
        kind = "tcp"
        port = 5432
        target = 5432
        """,
    )
    with pytest.raises(ConfigurationError, match="undeclared container"):
        catalog.get_service(chall_root, "web/x")


def test_invalid_directory_name_is_a_configuration_error(chall_root):
    write_challenge(chall_root, "web/Bad-Name-")
    with pytest.raises(ConfigurationError, match="web/Bad-Name-"):
        catalog.list_services(chall_root)


def test_named_attachment_alias(chall_root):
    d = write_challenge(chall_root, "rev/crackme")
    text = (d / "challenge.toml").read_text()
    provide = 'provide = [{ kind = "file", path = "a.bin" }, { kind = "named", path = "dist.tar", as = "crackme.tar" }]\n'
    (d / "challenge.toml").write_text(provide + text)

    s = catalog.get_service(chall_root, "rev/crackme")
    assert len(s.provide) == 2
    assert isinstance(s.provide[1], NamedAttachment)
    assert s.provide[1].as_name == "crackme.tar"


def test_get_service_unknown(chall_root):
    write_challenge(chall_root, "crypto/aesy")
    with pytest.raises(ServiceNotFound):
        catalog.get_service(chall_root, "crypto/nope")
    with pytest.raises(ServiceNotFound):
        catalog.get_service(chall_root, "not-an-id")


def test_get_services_checks_every_id_first(chall_root):
    write_challenge(chall_root, "crypto/aesy")
    with pytest.raises(ServiceNotFound) as exc:
        catalog.get_services(chall_root, ["crypto/aesy", "pwn/missing"])
    assert exc.value.service_id == "pwn/missing"


def test_missing_root_is_reported(tmp_path):
    with pytest.raises(ConfigurationError, match="Failed to read challenge directory"):
        catalog.list_services(tmp_path / "nope")


def test_instance_name_plain_join():
    assert instance_name("crypto/aesy", "main") == "crypto-aesy-main"
    # pure: same inputs, same output
    assert instance_name("crypto/aesy", "main") == instance_name("crypto/aesy", "main")


def test_instance_name_separator_ambiguity():
    assert instance_name("a/b-c", "d") != instance_name("a/b", "c-d")
    assert instance_name("a-b/c", "d") != instance_name("a/b-c", "d")


def _random_ident(rng):
    alphabet = "ab-_0"
    n = rng.randint(1, 6)
    s = "".join(rng.choice(alphabet) for _ in range(n))
    # idents never start or end with '-'
    return "x" + s + "x" if n > 1 else rng.choice("ab0")


def test_instance_name_injective_over_generated_ids():
    rng = random.Random(1337)
    triples = {(_random_ident(rng), _random_ident(rng), _random_ident(rng)) for _ in range(3000)}
    # exhaustive over short hyphenated pieces too
    pieces = ["a", "b", "a-b", "b-a", "a--b", "a-b-a"]
    triples |= set(itertools.product(pieces, repeat=3))

    for t in triples:
        for part in t:
            assert catalog.IDENT_RE.match(part), part

    names = {}
    for cat, chall, cont in triples:
        name = instance_name(f"{cat}/{chall}", cont)
        assert names.setdefault(name, (cat, chall, cont)) == (cat, chall, cont)
