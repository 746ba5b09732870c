"""Settle-and-collect for concurrent work.

``run_all`` is the single combinator used at every nesting level: resource
tasks inside a tunnel, the three sub-reconcilers, and tunnels inside a run.
A failure is kept as the exception object that was raised and never cancels
its siblings. Only a time limit cancels work, and what it cancelled is
reported as pending.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class Settled(Generic[T]):
    """Outcome of a batch of concurrent tasks."""

    successes: list[T] = field(default_factory=list)
    failures: list[BaseException] = field(default_factory=list)
    # Positions of the awaitables cancelled by a time limit
    pending: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.pending

    def extend(self, other: Settled[T]) -> None:
        self.successes.extend(other.successes)
        self.failures.extend(other.failures)


async def run_all(aws: Iterable[Awaitable[T]], timeout: float | None = None) -> Settled[T]:
    """Run awaitables concurrently and wait for every one to settle.

    Args:
        aws: The work to run. Results keep this order.
        timeout: Seconds to wait before cancelling whatever is still running;
            None waits indefinitely.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    settled: Settled[T] = Settled()
    if not tasks:
        return settled

    try:
        done, _ = await asyncio.wait(tasks, timeout=timeout)
    finally:
        for task in tasks:
            task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    for index, (task, result) in enumerate(zip(tasks, results, strict=True)):
        if task not in done:
            settled.pending.append(index)
        elif isinstance(result, BaseException):
            settled.failures.append(result)
        else:
            settled.successes.append(result)
    return settled


def describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def itemize_errors(errors: Sequence[BaseException]) -> str:
    lines = []
    for error in errors:
        # Indent nested itemized messages under their bullet
        text = describe_error(error).replace("\n", "\n    ")
        lines.append(f"  - {text}")
    return "\n".join(lines)


class TunnelSyncError(Exception):
    """One or more resource updates failed for a tunnel."""

    def __init__(self, tunnel_id: str, errors: Sequence[BaseException]) -> None:
        self.tunnel_id = tunnel_id
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} update(s) failed for tunnel {tunnel_id}:\n"
            f"{itemize_errors(self.errors)}"
        )


class SyncRunError(Exception):
    """One or more tunnels failed during a run.

    ``errors`` holds one exception per failed tunnel, unchanged.
    """

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} tunnel(s) failed:\n{itemize_errors(self.errors)}")
