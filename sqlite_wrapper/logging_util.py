"""JSON-lines event log for the connection layer.

Connection code calls debug/info/warn/error with an event name plus keyword
fields; each call becomes one JSON object on stderr. Records from many
threads are written whole (module lock) and tagged with the thread name, so
interleaved writer and transaction activity can be told apart.

LOG_LEVEL (DEBUG, INFO, WARN or WARNING, ERROR; default INFO) is read on every
call. Callers guard expensive fields with ``enabled("DEBUG")``, e.g. the
literal SQL rendering behind ``built_sql``.
"""
from __future__ import annotations
import os, sys, json, time, threading

_lock = threading.Lock()
LEVEL_ORDER = ["DEBUG", "INFO", "WARN", "ERROR"]
_ALIASES = {"WARNING": "WARN"}


def _normalize(level: str) -> str:
    level = level.upper()
    return _ALIASES.get(level, level)


def _threshold() -> str:
    return _normalize(os.environ.get("LOG_LEVEL", "INFO"))


def enabled(level: str) -> bool:
    try:
        return LEVEL_ORDER.index(_normalize(level)) >= LEVEL_ORDER.index(_threshold())
    except ValueError:
        # unknown threshold: log everything
        return True


def log(level: str, event: str, **fields):
    if not enabled(level):
        return
    record = {
        "ts": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
        "level": _normalize(level),
        "event": event,
        "thread": threading.current_thread().name,
    }
    record.update(fields)
    # fields may carry exceptions or paths
    line = json.dumps(record, separators=(',', ':'), default=str)
    with _lock:
        sys.stderr.write(line + "\n")
        sys.stderr.flush()


def debug(event: str, **fields): log("DEBUG", event, **fields)
def info(event: str, **fields): log("INFO", event, **fields)
def warn(event: str, **fields): log("WARN", event, **fields)
def error(event: str, **fields): log("ERROR", event, **fields)
