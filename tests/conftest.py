"""Shared fakes for the deploy watcher tests."""

from __future__ import annotations

from pathlib import Path

import pytest

import deploy_watcher as dw
from deploy_watcher import CommandResult


class FakeRunner:
    """Scripted stand-in for `deploy_watcher.run`.

    Keeps a HEAD per working directory; `git pull` moves it to the scripted
    remote head. Any command family can be told to fail.
    """

    def __init__(self, heads: dict[str, str] | None = None, remote_heads: dict[str, str] | None = None):
        self.heads = dict(heads or {})
        self.remote_heads = dict(remote_heads or {})
        self.origins: dict[str, str] = {}
        self.calls: list[tuple[list[str], str | None]] = []
        self._failures: dict[str, list] = {}

    def fail(self, key: str, output: str = "boom", returncode: int = 1, after: int = 0) -> None:
        """Fail `key` commands once `after` of them have succeeded."""
        self._failures[key] = [after, CommandResult(returncode, output)]

    def count(self, key: str) -> int:
        return sum(1 for args, _ in self.calls if self._key(args) == key)

    def __call__(self, args, cwd=None, combine=True) -> CommandResult:
        args = [str(a) for a in args]
        where = str(cwd) if cwd is not None else None
        self.calls.append((args, where))
        key = self._key(args)

        if key in self._failures:
            remaining, result = self._failures[key]
            if remaining <= 0:
                return result
            self._failures[key][0] -= 1

        if key == "rev-parse":
            return CommandResult(0, self.heads.get(where, "") + "\n")
        if key == "get-url":
            if where not in self.origins:
                return CommandResult(2, "error: No such remote 'origin'\n")
            return CommandResult(0, self.origins[where] + "\n")
        if key == "set-url":
            self.origins[where] = args[-1]
            return CommandResult(0, "")
        if key == "pull":
            if where in self.remote_heads:
                self.heads[where] = self.remote_heads[where]
            return CommandResult(0, "Already up to date.\n")
        return CommandResult(0, "")

    @staticmethod
    def _key(args: list[str]) -> str:
        if args and args[0] == "sudo":
            args = args[1:]
        if args[:2] == ["git", "rev-parse"]:
            return "rev-parse"
        if args[:3] == ["git", "remote", "get-url"]:
            return "get-url"
        if args[:3] == ["git", "remote", "set-url"]:
            return "set-url"
        if args[:2] == ["git", "pull"]:
            return "pull"
        if args[:2] == ["git", "merge"]:
            return "merge"
        if args[:2] == ["git", "rebase"]:
            return "rebase"
        if len(args) > 1 and args[1] == "build":
            return "build"
        if args[:1] == ["cp"]:
            return "cp"
        if args[:1] == ["systemctl"]:
            return "systemctl"
        return " ".join(args)


class Recorder:
    """Collects notification messages instead of posting them."""

    def __init__(self):
        self.messages: list[str] = []

    def __call__(self, message: str) -> bool:
        self.messages.append(message)
        return True


def make_settings(tmp_path: Path, branches=("main",), **overrides) -> dw.Settings:
    envs = tuple(
        dw.Environment(branch=b, dir=tmp_path / b, service_name=f"svc-{b}") for b in branches
    )
    fields = dict(
        environments=envs,
        interval_seconds=30,
        git=dw.GitConfig(username="bot", token="s3cret", repo_owner="acme", repo_name="hub", use_auth=True),
        slack=dw.SlackConfig(enabled=True, webhook_url="https://hooks.example.test/T000"),
    )
    fields.update(overrides)
    return dw.Settings(**fields)


@pytest.fixture
def settings(tmp_path: Path) -> dw.Settings:
    return make_settings(tmp_path)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture(autouse=True)
def _reset_logging(monkeypatch):
    """Keep log output on stdout and step logging off unless a test opts in."""
    monkeypatch.setattr(dw, "LOG_STEPS", False)
    dw.close_log_sink()
    yield
    dw.close_log_sink()
