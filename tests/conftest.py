"""Shared fixtures: a scripted command executor and a no-op sleep."""

from __future__ import annotations

import pytest

from aisandbox.executor import CommandExecutor, CommandResult


class FakeExecutor(CommandExecutor):
    """Records every command; answers from a prefix -> response table.

    A response is ``(returncode, stdout, stderr)`` or a list of those, consumed
    one per call with the last one repeating. Unmatched commands succeed.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, ...]] = []

    def run(self, args, *, timeout=None, env=None) -> CommandResult:
        args = tuple(args)
        self.calls.append(args)
        joined = " ".join(args)
        for prefix, response in self.responses.items():
            if joined.startswith(prefix):
                if isinstance(response, list):
                    response = response.pop(0) if len(response) > 1 else response[0]
                rc, out, err = response
                return CommandResult(args, rc, out, err)
        return CommandResult(args, 0, "", "")

    def commands(self) -> list[str]:
        return [" ".join(c) for c in self.calls]

    def index_of(self, prefix: str) -> int:
        for i, cmd in enumerate(self.commands()):
            if cmd.startswith(prefix):
                return i
        return -1

    def ran(self, prefix: str) -> bool:
        return self.index_of(prefix) >= 0


@pytest.fixture
def no_sleep():
    calls: list[float] = []

    def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def make_executor():
    """Factory for executors with scripted responses."""
    return FakeExecutor
