"""Shared fixtures for htreq scenario tests."""

import json

import pytest
from click.testing import CliRunner

from htreq import core
from htreq.executor import Response


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_htreq_dir(tmp_path, monkeypatch):
    """Override the global ~/.htreq directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".htreq"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def write_http(tmp_path):
    """Write a request file into tmp_path and return its path as a string."""

    def _write(text, name="requests.http"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write


def make_response(status_code=200, body="", headers=None, elapsed_ms=42.0):
    """Factory for transport Response objects."""
    if isinstance(body, dict | list):
        body = json.dumps(body)
    r = Response(status_code, headers or {}, body)
    r.elapsed_ms = elapsed_ms
    return r


class FakeTransport:
    """Records every call and answers from a queue (or a fixed response)."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses)

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if not self.responses:
            return make_response(body="")
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)

    @property
    def urls(self):
        return [c["url"] for c in self.calls]


class FakeRunner:
    """Stand-in for the shell: counts executions per command."""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.calls = []

    def __call__(self, command, timeout=None):
        self.calls.append(command)
        value = self.outputs.get(command, f"out:{command}")
        if callable(value):
            return value()
        return value
