"""Subprocess wrapper, JSONL event log and backoff helpers."""
from __future__ import annotations

import datetime as _dt
import json
import os
import subprocess
import time
from typing import Callable, Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "archcrypt.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/archcrypt",
        "/tmp/archcrypt-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("ARCHCRYPT_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float = 60.0,
    env: dict | None = None,
    input: str | None = None,
    retry_on_timeout: bool = True,
) -> Result:
    """Run ``cmd`` and capture its output.

    ``input`` is fed on stdin and is never written to the event log, so it is
    the only channel secrets may travel through.  A timed out command is
    retried once after ``udevadm settle`` unless ``retry_on_timeout`` is off,
    which destructive callers should use.
    """

    trace("exec.start", cmd=list(cmd), stdin=input is not None)
    started = time.monotonic()
    env2 = (env or os.environ).copy()
    env2.setdefault("LC_ALL", "C")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    except subprocess.TimeoutExpired:
        warn("exec.timeout", cmd=list(cmd), timeout=timeout)
        if not retry_on_timeout:
            raise
        udev_settle()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input)
    dur = time.monotonic() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=round(dur, 3))
    if proc.returncode != 0:
        log("INFO" if not check else "WARN", "exec.nonzero",
            cmd=list(cmd), rc=proc.returncode, err=(proc.stderr or "").strip()[-2000:])
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


# everything run() lets escape when a tool fails, hangs or is missing
TOOL_ERRORS = (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError)


def describe_failure(exc: BaseException) -> str:
    if isinstance(exc, subprocess.TimeoutExpired):
        return f"timed out after {exc.timeout:g}s"
    if isinstance(exc, subprocess.CalledProcessError):
        msg = (exc.stderr or exc.stdout or "").strip()
        return msg or f"exit status {exc.returncode}"
    return str(exc)


def failure_state(exc: BaseException) -> dict:
    """Diagnostics for a ``TOOL_ERRORS`` instance, for an error's ``state``."""

    state: dict = {"error": type(exc).__name__}
    cmd = getattr(exc, "cmd", None)
    if cmd is not None:
        state["cmd"] = list(cmd) if not isinstance(cmd, str) else [cmd]
    if isinstance(exc, subprocess.CalledProcessError):
        state["rc"] = exc.returncode
    elif isinstance(exc, OSError) and exc.filename:
        state["cmd"] = [exc.filename]
    return state


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except FileNotFoundError:
        pass


def poll_until(
    predicate: Callable[[], bool],
    timeout: float = 30.0,
    base: float = 0.1,
    max_delay: float = 2.0,
    between: Callable[[], None] | None = None,
) -> bool:
    """Poll ``predicate`` with exponential backoff until it holds or ``timeout`` passes.

    ``between`` runs after each failed probe (typically ``udev_settle`` or a
    partition re-read).  Returns ``False`` on timeout instead of raising so the
    caller can name the resource that never showed up.
    """

    deadline = time.monotonic() + timeout
    delay = base
    attempt = 0
    while True:
        attempt += 1
        if predicate():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            trace("poll.timeout", attempts=attempt, timeout=timeout)
            return False
        if between is not None:
            between()
        time.sleep(min(delay, max(0.0, remaining)))
        delay = min(max_delay, delay * 2)


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
