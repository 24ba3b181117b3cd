import subprocess
from types import SimpleNamespace

import pytest

from archcrypt import executil


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    return tmp_path / "logs" / executil.LOG_NAME


class FakeRunner:
    """Stand-in for ``executil.run`` that records commands.

    Responses are matched on the longest command prefix registered with
    ``on`` (later rules win ties); unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls = []
        self.inputs = []
        self._rules = []

    def on(self, prefix, rc=0, out="", err="", action=None, handler=None, raises=None):
        """Register a response; ``handler(cmd, input)`` may return ``(rc, out, err)``.

        ``raises`` is an exception, or a callable of ``cmd`` building one, that
        the command raises instead of returning.
        """
        self._rules.append((tuple(prefix), rc, out, err, action, handler, raises))
        return self

    def _match(self, cmd):
        best = None
        for rule in self._rules:
            prefix = rule[0]
            if tuple(cmd[: len(prefix)]) == prefix and (best is None or len(prefix) >= len(best[0])):
                best = rule
        return best

    def __call__(self, cmd, check=True, input=None, **_kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.inputs.append(input)
        rc, out, err = 0, "", ""
        rule = self._match(cmd)
        if rule:
            _prefix, rc, out, err, action, handler, raises = rule
            if raises is not None:
                raise raises(cmd) if callable(raises) and not isinstance(raises, BaseException) else raises
            if handler is not None:
                rc, out, err = handler(cmd, input)
            if action is not None:
                action(cmd)
            if callable(rc):
                rc = rc(cmd)
            if callable(out):
                out = out(cmd)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, out, err)
        return SimpleNamespace(rc=rc, out=out, err=err, duration=0.0)

    def commands(self, name):
        return [c for c in self.calls if c and c[0] == name]

    def index(self, cmd):
        return self.calls.index(list(cmd))


@pytest.fixture
def fake_run(monkeypatch):
    from archcrypt import devices, luks_lvm, mounts, partitioning, preflight, safety, system

    runner = FakeRunner()
    for mod in (devices, luks_lvm, mounts, partitioning, preflight, safety, system):
        monkeypatch.setattr(mod, "run", runner)
    for mod in (luks_lvm, mounts, partitioning):
        monkeypatch.setattr(mod, "udev_settle", lambda: None)
    return runner
