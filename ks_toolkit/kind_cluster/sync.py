"""Concurrent image synchronization into a kind cluster."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .. import runner

DEFAULT_CLUSTER_NAME = "kind"

Executor = Callable[[Sequence[str]], object]
SYNC_ERRORS = (
    runner.CommandError,
    runner.CommandLaunchError,
    runner.CommandTimeoutError,
    runner.RelayError,
    OSError,
)


def _default_execute(command: Sequence[str]) -> object:
    return runner.run_command(command).check()


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)


@dataclass(frozen=True, slots=True)
class SyncJob:
    """Pull one image with docker and load it into a kind cluster."""

    image: str
    cluster_name: str = DEFAULT_CLUSTER_NAME

    def fetch_command(self) -> list[str]:
        return ["docker", "pull", self.image]

    def stage_command(self) -> list[str]:
        return ["kind", "load", "docker-image", self.image, "--name", self.cluster_name]


@dataclass(slots=True)
class SyncResult:
    image: str
    failed_step: str | None = None
    error: BaseException | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BatchResult:
    """Per-job results of one batch, in submission order."""

    label: str
    results: list[SyncResult] = field(default_factory=list)

    @property
    def images(self) -> list[str]:
        return [result.image for result in self.results]

    @property
    def failures(self) -> list[SyncResult]:
        return [result for result in self.results if not result.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        failures = self.failures
        if not failures:
            return f"Synced {len(self.results)} {self.label}."
        names = ", ".join(f"{result.image} ({result.failed_step})" for result in failures)
        return f"{len(failures)} of {len(self.results)} {self.label} failed to sync: {names}"


def run_sync_job(job: SyncJob, *, execute: Executor | None = None) -> SyncResult:
    """Fetch then stage ``job.image``; staging is skipped when the fetch fails.

    Failures are captured on the result instead of raised. Nothing is retried
    or rolled back.
    """

    execute = execute or _default_execute
    started = time.monotonic()
    for step, command in (("fetch", job.fetch_command()), ("stage", job.stage_command())):
        try:
            execute(command)
        except SYNC_ERRORS as exc:
            _log(f"Failed to {step} {job.image}: {exc}")
            return SyncResult(job.image, step, exc, time.monotonic() - started)
    return SyncResult(job.image, elapsed=time.monotonic() - started)


class ParallelSyncBatch:
    """Run one :class:`SyncJob` per image concurrently and wait for all of them.

    Every job gets its own worker. ``run`` returns only after each job has
    reported completion, successful or not.
    """

    def __init__(
        self,
        images: Iterable[str],
        *,
        cluster_name: str = DEFAULT_CLUSTER_NAME,
        execute: Executor | None = None,
        label: str = "images",
    ):
        self.jobs = [SyncJob(image, cluster_name) for image in images]
        self.execute = execute
        self.label = label

    def run(self) -> BatchResult:
        batch = BatchResult(self.label)
        if not self.jobs:
            return batch

        _log(f"Syncing {len(self.jobs)} {self.label} into kind cluster")
        with ThreadPoolExecutor(
            max_workers=len(self.jobs), thread_name_prefix="ks-sync"
        ) as executor:
            futures = [
                executor.submit(run_sync_job, job, execute=self.execute) for job in self.jobs
            ]
        # Leaving the executor block joins every worker.
        batch.results = [future.result() for future in futures]
        _log(batch.summary())
        return batch
