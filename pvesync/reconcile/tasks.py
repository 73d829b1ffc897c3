"""
Polling of asynchronous hypervisor tasks.

A task is polled with bounded exponential backoff until it reaches a
terminal state, its timeout elapses or its cancel event is set. Each poll is
independent: one task timing out never disturbs the others.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pvesync.client.base import ApiClient
from pvesync.errors import TransportError
from pvesync.model.resources import Task, TaskStatus
from pvesync.utils.retry import backoff_delays

logger = logging.getLogger(__name__)


class TaskOutcome(Enum):
    """Terminal result of polling one task."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    CANCELLED = "cancelled"


@dataclass
class TaskResult:
    """Result of polling a task to completion."""

    task: Task
    outcome: TaskOutcome
    polls: int = 0
    elapsed: float = 0.0
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == TaskOutcome.SUCCEEDED

    def audit_line(self) -> str:
        line = f"{self.task.audit_line()} outcome={self.outcome.value}"
        if self.error_message:
            line += f" error={self.error_message}"
        return line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upid": self.task.upid,
            "node": self.task.node,
            "type": self.task.type,
            "target": self.task.target,
            "outcome": self.outcome.value,
            "exit_status": self.task.exit_status,
            "polls": self.polls,
            "elapsed": round(self.elapsed, 3),
            "error_message": self.error_message,
            "success": self.success,
        }


def parse_upid(upid: str) -> Task:
    """
    Build a queued Task from a Proxmox UPID
    (``UPID:<node>:<pid>:<pstart>:<starttime>:<type>:<id>:<user>:``).
    """
    parts = upid.split(":")
    if len(parts) < 8 or parts[0] != "UPID":
        raise ValueError(f"Invalid UPID: {upid!r}")
    try:
        started_at = int(parts[4], 16)
    except ValueError:
        started_at = None
    return Task(
        upid=upid,
        node=parts[1],
        type=parts[5],
        target=parts[6] or None,
        started_at=started_at,
    )


def apply_status(task: Task, raw: Dict[str, Any]) -> Task:
    """Fold a ``/tasks/{upid}/status`` record into ``task``."""
    if raw.get("status") == "running":
        status = TaskStatus.RUNNING
    elif raw.get("status") == "stopped":
        exit_status = str(raw.get("exitstatus") or "")
        ok = exit_status == "OK" or exit_status.startswith("WARNINGS")
        status = TaskStatus.SUCCEEDED if ok else TaskStatus.FAILED
    else:
        status = task.status
    return task.model_copy(
        update={
            "status": status,
            "exit_status": raw.get("exitstatus", task.exit_status),
            "type": raw.get("type") or task.type,
            "target": raw.get("id") or task.target,
            "started_at": raw.get("starttime", task.started_at),
            "ended_at": raw.get("endtime", task.ended_at),
        }
    )


class TaskPoller:
    """
    Polls tasks to a terminal state.

    Usage:
        poller = TaskPoller(client, initial=0.5, maximum=5.0, timeout=300)
        result = await poller.poll(parse_upid(upid), cancel=event)
    """

    def __init__(self, client: ApiClient, initial: float = 0.5, maximum: float = 5.0, timeout: float = 300.0):
        self.client = client
        self.initial = initial
        self.maximum = maximum
        self.timeout = timeout

    async def poll(
        self,
        task: Task,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> TaskResult:
        """
        Poll ``task`` until it finishes.

        Transport errors propagate to the caller; timeouts and cancellation
        are reported as outcomes.
        """
        budget = self.timeout if timeout is None else timeout
        start = time.monotonic()
        deadline = start + budget
        delays = backoff_delays(self.initial, 2.0, self.maximum)
        polls = 0

        while True:
            if cancel is not None and cancel.is_set():
                return self._result(task, TaskOutcome.CANCELLED, polls, start)

            raw = await self.client.get_task_status(task.node, task.upid)
            polls += 1
            task = apply_status(task, raw)
            if task.finished:
                outcome = TaskOutcome.SUCCEEDED if task.status == TaskStatus.SUCCEEDED else TaskOutcome.FAILED
                result = self._result(task, outcome, polls, start)
                if outcome == TaskOutcome.FAILED:
                    result.error_message = task.exit_status
                    logger.warning("Task %s failed: %s", task.upid, task.exit_status)
                else:
                    logger.info("Task %s succeeded after %d poll(s)", task.upid, polls)
                return result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Task %s timed out after %.1fs", task.upid, budget)
                return self._result(task, TaskOutcome.TIMED_OUT, polls, start)

            delay = min(next(delays), remaining)
            logger.debug("Task %s still %s, next poll in %.2fs", task.upid, task.status.value, delay)
            if await self._wait(delay, cancel):
                return self._result(task, TaskOutcome.CANCELLED, polls, start)

    async def poll_many(
        self,
        tasks: Iterable[Task],
        concurrency: int = 4,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[TaskResult]:
        """Poll several tasks concurrently; results keep the input order."""
        semaphore = asyncio.Semaphore(concurrency)

        async def _one(task: Task) -> TaskResult:
            async with semaphore:
                try:
                    return await self.poll(task, cancel=cancel)
                except TransportError as e:
                    logger.error("Polling task %s failed: %s", task.upid, e)
                    return TaskResult(task=task, outcome=TaskOutcome.FAILED, error_message=str(e))

        return list(await asyncio.gather(*(_one(t) for t in tasks)))

    @staticmethod
    async def _wait(delay: float, cancel: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``; return True if ``cancel`` fired first."""
        if cancel is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _result(task: Task, outcome: TaskOutcome, polls: int, start: float) -> TaskResult:
        return TaskResult(task=task, outcome=outcome, polls=polls, elapsed=time.monotonic() - start)
