import json
from pathlib import Path

import pytest

from nixiform.core.errors import InvalidProvisioner, NoInputFile, NoSuchInstance
from nixiform.inventory.inventory import DocumentPath, Inventory

DOC = {
    "nodes": {
        "web": {"ip": "10.0.0.2", "provider": "hcloud", "ssh_key": "ssh-ed25519 AAAAweb", "tags": ["a", "b"]},
        "db": {"ip": "10.0.0.3"},
        "broken": {"provider": "vultr"},
    },
    "meta": {"region": "fsn1"},
}


def test_node_lookup_and_defaults():
    inv = Inventory(DOC)
    web = inv.node("web")
    assert web.ip == "10.0.0.2"
    assert web.provider == "hcloud"
    assert web.meta == {"tags": ["a", "b"]}
    assert inv.node("db").provider == "generic"
    assert inv.names() == ["broken", "db", "web"]


def test_unknown_node_and_missing_ip():
    inv = Inventory(DOC)
    with pytest.raises(NoSuchInstance):
        inv.node("cache")
    with pytest.raises(InvalidProvisioner):
        inv.node("broken")


def test_select_keeps_request_order_without_duplicates():
    inv = Inventory(DOC)
    assert inv.select(["web", "db", "web"]) == ["web", "db"]
    assert inv.select(None) == ["broken", "db", "web"]


def test_query_by_typed_path():
    inv = Inventory(DOC)
    assert inv.query("meta.region") == "fsn1"
    assert inv.query("nodes.web.tags.1") == "b"
    assert DocumentPath.parse("nodes.web.tags.1").segments == ("nodes", "web", "tags", 1)
    with pytest.raises(KeyError):
        inv.query("nodes.web.tags.7")


def test_accepts_terraform_output_wrapper():
    inv = Inventory({"nixiform": {"sensitive": False, "value": DOC}})
    assert inv.node("web").ip == "10.0.0.2"
    with pytest.raises(InvalidProvisioner):
        Inventory({"a": 1, "b": 2})


def test_write_and_load_roundtrip(tmp_path: Path):
    target = Inventory(DOC).write(tmp_path / "state")
    assert json.loads(target.read_text())["meta"] == {"region": "fsn1"}
    assert (tmp_path / "state" / "known_hosts").read_text() == "10.0.0.2 ssh-ed25519 AAAAweb\n"
    assert Inventory.load(target).node("db").ip == "10.0.0.3"


def test_load_missing_snapshot(tmp_path: Path):
    with pytest.raises(NoInputFile):
        Inventory.load(tmp_path / "input.json")


def test_known_hosts_on_custom_port(tmp_path: Path):
    Inventory(DOC).write(tmp_path, port=2222)
    assert (tmp_path / "known_hosts").read_text() == "[10.0.0.2]:2222 ssh-ed25519 AAAAweb\n"


@pytest.mark.parametrize("name", ["../escape", "a/b", ".hidden"])
def test_node_names_must_be_plain_file_names(name):
    inv = Inventory({"nodes": {name: {"ip": "10.0.0.9"}}})
    with pytest.raises(InvalidProvisioner):
        inv.node(name)
