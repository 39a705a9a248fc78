"""
Shared fixtures for fpf tests.
"""

import os
import threading
import time

import pytest

from fpf.adapters import AdapterRegistry, BackendAdapter
from fpf.backends import ReadinessProbe
from fpf.cache import CacheStore
from fpf.config import Settings
from fpf.models import BackendError


class FakeAdapter(BackendAdapter):
    """In-memory adapter recording every call."""

    def __init__(self, name, rows=(), installed=(), error=None, delay=0.0, info=None):
        self.name = name
        self.info = dict(info or {})
        self.info_calls = []
        self.rows = list(rows)
        self.installed_names = list(installed)
        self.error = error
        self.delay = delay
        self.search_calls = []
        self.installed_calls = 0
        self._lock = threading.Lock()

    def search(self, request, timeout=None, allow_fallback=False):
        with self._lock:
            self.search_calls.append((request, timeout, allow_fallback))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.rows)

    def installed(self, timeout=None):
        with self._lock:
            self.installed_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.installed_names)

    def show_info(self, package, timeout=None):
        self.info_calls.append(package)
        if package not in self.info:
            raise BackendError(self.name, f"no information for {package}")
        return self.info[package]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def clean_fpf_env(monkeypatch):
    """Keep the developer's FPF_* settings out of tests."""
    for name in list(os.environ):
        if name.startswith("FPF_") or name == "FZF_PORT":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def paths():
    """Mutable command → resolved path table backing a ReadinessProbe."""
    return {}


@pytest.fixture
def probe(paths):
    return ReadinessProbe(which=lambda command: paths.get(command))


@pytest.fixture
def make_store(tmp_path, probe, clock):
    def factory(settings=None):
        return CacheStore(root=tmp_path / "cache", settings=settings or Settings(), probe=probe, clock=clock)
    return factory


@pytest.fixture
def registry():
    def factory(*adapters):
        return AdapterRegistry({adapter.name: adapter for adapter in adapters})
    return factory
