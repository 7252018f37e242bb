"""hatimer — distributed delayed-event dispatcher on Redis.

Modules
-------
timer       HATimer facade: install, add_event, remove_event, purge
delay       Duration strings and millisecond delays → due timestamps
sharding    Shard keys, hash routing for ids, counter rotation for polling
script      Atomic Lua slice with EVALSHA caching and EVAL fallback
store       Message records and due markers
handlers    Per-event-type handler registry
poller      Poll/dispatch loop
settings    TimerSettings (HATIMER_* environment)
errors      HATimerError hierarchy
logging     structlog configuration
"""

from hatimer.delay import parse_delay, parse_duration
from hatimer.errors import (
    HandlerError,
    HATimerError,
    InvalidDelayError,
    NotInstalledError,
    ScriptNotCachedError,
    SerializationError,
    StoreError,
    StoreUnavailableError,
)
from hatimer.handlers import HandlerRegistry
from hatimer.models import Event, RemoveResult
from hatimer.poller import PollLoop, PollStats
from hatimer.settings import TimerSettings, UndeliverablePolicy, get_settings
from hatimer.sharding import ShardRouter
from hatimer.timer import HATimer

__version__ = "0.1.0"

__all__ = [
    "HATimer",
    "TimerSettings",
    "UndeliverablePolicy",
    "get_settings",
    "Event",
    "RemoveResult",
    "HandlerRegistry",
    "PollLoop",
    "PollStats",
    "ShardRouter",
    "parse_delay",
    "parse_duration",
    "HATimerError",
    "InvalidDelayError",
    "SerializationError",
    "NotInstalledError",
    "StoreError",
    "StoreUnavailableError",
    "ScriptNotCachedError",
    "HandlerError",
]
