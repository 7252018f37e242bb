"""
Shared pytest fixtures for hatimer tests.

This module provides:
- An in-process async Redis (fakeredis) per test, isolated by FakeServer
- A second client on the same server for multi-instance tests
- A controllable millisecond clock

Lua-dependent tests request the ``lua`` fixture, which skips when ``lupa``
(the fakeredis[lua] extra) is unavailable.
"""

from __future__ import annotations

import pytest

from tests._support.timing import FakeClock

fakeredis = pytest.importorskip("fakeredis")


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis(server):
    """Async fake Redis client returning ``str`` values."""
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


@pytest.fixture
def other_redis(server):
    """A second client on the same server, as another process would have."""
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


@pytest.fixture
def lua():
    """Skip unless the fake server can run Lua scripts."""
    pytest.importorskip("lupa")


@pytest.fixture
def clock():
    return FakeClock()
