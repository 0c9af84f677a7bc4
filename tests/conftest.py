import io
import types

import pytest

from nixiform.config.models import NixiformConfig
from nixiform.core.models import Node

# ----------------- Fakes for the remote channel and nix -----------------


class FakeRemote:
    """
    Scripted RemoteRunner. `on(needle, *responses)` answers commands that
    contain *needle*; responses are consumed in order and the last one
    repeats. First registered needle wins. Exceptions are raised.
    """

    def __init__(self):
        self.commands = []
        self.streamed = []
        self.transfers = []
        self.transfer_error = None
        self._handlers = []

    def on(self, needle, *responses):
        self._handlers.append((needle, list(responses)))
        return self

    def count(self, needle):
        return sum(1 for c in self.commands if needle in c)

    def execute(self, node, command, *, stdin=None):
        self.commands.append(command)
        for needle, queue in self._handlers:
            if needle in command:
                resp = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(resp, Exception):
                    raise resp
                return resp
        return (0, "", "")

    def stream(self, node, command, chunks):
        data = b"".join(chunks)
        self.streamed.append((command, data))
        return self.execute(node, command)

    def transfer(self, node, artifact, mode):
        self.transfers.append((artifact, mode))
        if self.transfer_error:
            raise self.transfer_error


class FakeNix:
    """Evaluator + Builder double with canned answers."""

    def __init__(self, values=None):
        self.values = values or {}
        self.calls = []
        self.export_rc = 0

    def evaluate(self, node, expression):
        self.calls.append(("evaluate", node, expression))
        value = self.values.get(expression)
        if isinstance(value, Exception):
            raise value
        return value

    def build(self, node):
        self.calls.append(("build", node))
        return f"/nix/store/aaa-nixos-system-{node}"

    def instantiate(self, node):
        self.calls.append(("instantiate", node))
        return f"/nix/store/bbb-nixos-system-{node}.drv"

    def realise(self, drv, options=()):
        self.calls.append(("realise", drv, list(options)))
        return drv[: -len(".drv")]

    def requisites(self, path):
        self.calls.append(("requisites", path))
        return [path, "/nix/store/ccc-glibc"]

    def export(self, paths):
        self.calls.append(("export", list(paths)))
        rc = self.export_rc
        return types.SimpleNamespace(stdout=io.BytesIO(b"NIXARCHIVE" * 100), wait=lambda: rc)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def nix():
    return FakeNix()


@pytest.fixture
def node():
    return Node(name="node-1", ip="10.0.0.11", provider="hcloud")


@pytest.fixture
def config(tmp_path):
    return NixiformConfig(source=str(tmp_path), work_dir=tmp_path / ".nixiform")


@pytest.fixture
def sleeps(monkeypatch):
    """Record retry sleeps instead of waiting."""
    import nixiform.utils.retry as retry_mod

    calls = []
    monkeypatch.setattr(retry_mod.time, "sleep", lambda s: calls.append(s))
    return calls
