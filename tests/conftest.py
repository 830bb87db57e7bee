"""Test fixtures and configuration helpers."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

# Ensure the project root is importable when the package is not installed.
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ks_toolkit import runner  # noqa: E402


class CommandRecorder:
    """Thread-safe stand-in for the command executor used by the pipeline."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.failures: list[Callable[[list[str]], bool]] = []
        self._lock = threading.Lock()

    def fail_when(self, predicate: Callable[[list[str]], bool]) -> None:
        self.failures.append(predicate)

    def __call__(self, command: Sequence[str]) -> None:
        argv = list(command)
        with self._lock:
            self.commands.append(argv)
        if any(predicate(argv) for predicate in self.failures):
            raise runner.CommandError(argv, returncode=1)

    def index(self, prefix: Sequence[str]) -> int:
        for position, command in enumerate(self.commands):
            if command[: len(prefix)] == list(prefix):
                return position
        raise AssertionError(f"{list(prefix)} was never executed")

    def matching(self, *prefix: str) -> list[list[str]]:
        return [command for command in self.commands if command[: len(prefix)] == list(prefix)]


@pytest.fixture
def recorder() -> CommandRecorder:
    return CommandRecorder()
