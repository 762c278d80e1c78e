"""
Scheduled task storage behind a small interface.

There is no recurring task primitive: callers schedule exactly one future
occurrence per ``(hook, args)`` and cancel with ``cancel_all`` before
rescheduling. Delivery is at-least-once, so hook handlers must be idempotent.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from recurring_billing_svc.exceptions import PersistenceError
from recurring_billing_svc.models.scheduled_task import (
    CANCELLED,
    COMPLETE,
    FAILED,
    PENDING,
    RUNNING,
    ScheduledTask,
    canonical_args,
)


@dataclass
class Task:
    id: int
    hook: str
    args: Dict[str, Any]
    scheduled_at: int
    status: str = PENDING
    attempts: int = 0
    last_error: Optional[str] = None


class TaskQueue(ABC):

    @abstractmethod
    def schedule_single(self, timestamp: int, hook: str, args: Dict[str, Any]) -> int:
        """Schedule one run of ``hook`` with ``args`` at ``timestamp`` (epoch seconds)."""

    @abstractmethod
    def cancel_all(self, hook: str, args: Dict[str, Any]) -> int:
        """Cancel every pending task matching ``(hook, args)``; returns how many were cancelled."""

    @abstractmethod
    def get_next(self, hook: str, args: Dict[str, Any]) -> Optional[int]:
        """Timestamp of the earliest pending task for ``(hook, args)``, or None."""

    @abstractmethod
    def search(self, hook: Optional[str] = None, args: Optional[Dict[str, Any]] = None, status: Optional[str] = None) -> List[Task]:
        pass

    @abstractmethod
    def claim_due(self, now_ts: int, limit: int = 50) -> List[Task]:
        """Mark up to ``limit`` due pending tasks as running and return them."""

    @abstractmethod
    def complete(self, task_id: int) -> None:
        pass

    @abstractmethod
    def fail(self, task_id: int, error: str, retry_at: Optional[int] = None) -> None:
        """Record a failed run; with ``retry_at`` the task goes back to pending at that time."""


class InMemoryTaskQueue(TaskQueue):

    def __init__(self) -> None:
        self._tasks: Dict[int, Task] = {}
        self._next_id = 1

    def schedule_single(self, timestamp: int, hook: str, args: Dict[str, Any]) -> int:
        task = Task(id=self._next_id, hook=hook, args=dict(args or {}), scheduled_at=int(timestamp))
        self._tasks[task.id] = task
        self._next_id += 1
        return task.id

    def _matching(self, hook: Optional[str], args: Optional[Dict[str, Any]], status: Optional[str]) -> List[Task]:
        key = canonical_args(args) if args is not None else None
        return [
            task for task in self._tasks.values()
            if (hook is None or task.hook == hook)
            and (key is None or canonical_args(task.args) == key)
            and (status is None or task.status == status)
        ]

    def cancel_all(self, hook: str, args: Dict[str, Any]) -> int:
        tasks = self._matching(hook, args, PENDING)
        for task in tasks:
            task.status = CANCELLED
        return len(tasks)

    def get_next(self, hook: str, args: Dict[str, Any]) -> Optional[int]:
        timestamps = [task.scheduled_at for task in self._matching(hook, args, PENDING)]
        return min(timestamps) if timestamps else None

    def search(self, hook: Optional[str] = None, args: Optional[Dict[str, Any]] = None, status: Optional[str] = None) -> List[Task]:
        tasks = sorted(self._matching(hook, args, status), key=lambda task: (task.scheduled_at, task.id))
        return [replace(task, args=dict(task.args)) for task in tasks]

    def claim_due(self, now_ts: int, limit: int = 50) -> List[Task]:
        due = [task for task in self._matching(None, None, PENDING) if task.scheduled_at <= now_ts]
        due = sorted(due, key=lambda task: (task.scheduled_at, task.id))[:limit]
        for task in due:
            task.status = RUNNING
            task.attempts += 1
        return [replace(task, args=dict(task.args)) for task in due]

    def complete(self, task_id: int) -> None:
        self._tasks[task_id].status = COMPLETE

    def fail(self, task_id: int, error: str, retry_at: Optional[int] = None) -> None:
        task = self._tasks[task_id]
        task.last_error = error
        if retry_at is None:
            task.status = FAILED
        else:
            task.status = PENDING
            task.scheduled_at = int(retry_at)


class DatabaseTaskQueue(TaskQueue):
    """Task queue stored in the ``scheduled_tasks`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logging.error(f"Failed to {action}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _to_task(row: ScheduledTask) -> Task:
        return Task(
            id=row.id,
            hook=row.hook,
            args=row.decoded_args(),
            scheduled_at=row.scheduled_at,
            status=row.status,
            attempts=row.attempts,
            last_error=row.last_error,
        )

    def _query(self, hook: Optional[str] = None, args: Optional[Dict[str, Any]] = None, status: Optional[str] = None):
        query = self.db.query(ScheduledTask)
        if hook is not None:
            query = query.filter(ScheduledTask.hook == hook)
        if args is not None:
            query = query.filter(ScheduledTask.args == canonical_args(args))
        if status is not None:
            query = query.filter(ScheduledTask.status == status)
        return query

    def schedule_single(self, timestamp: int, hook: str, args: Dict[str, Any]) -> int:
        row = ScheduledTask(hook=hook, args=canonical_args(args), scheduled_at=int(timestamp), status=PENDING, attempts=0)
        self.db.add(row)
        self._commit(f"schedule {hook}")
        return row.id

    def cancel_all(self, hook: str, args: Dict[str, Any]) -> int:
        rows = self._query(hook, args, PENDING).all()
        for row in rows:
            row.status = CANCELLED
        if rows:
            self._commit(f"cancel {hook}")
        return len(rows)

    def get_next(self, hook: str, args: Dict[str, Any]) -> Optional[int]:
        row = self._query(hook, args, PENDING).order_by(ScheduledTask.scheduled_at).first()
        return row.scheduled_at if row is not None else None

    def search(self, hook: Optional[str] = None, args: Optional[Dict[str, Any]] = None, status: Optional[str] = None) -> List[Task]:
        rows = self._query(hook, args, status).order_by(ScheduledTask.scheduled_at, ScheduledTask.id).all()
        return [self._to_task(row) for row in rows]

    def claim_due(self, now_ts: int, limit: int = 50) -> List[Task]:
        rows = (
            self._query(status=PENDING)
            .filter(ScheduledTask.scheduled_at <= now_ts)
            .order_by(ScheduledTask.scheduled_at, ScheduledTask.id)
            .limit(limit)
            .all()
        )
        for row in rows:
            row.status = RUNNING
            row.attempts += 1
        if rows:
            self._commit('claim due tasks')
        return [self._to_task(row) for row in rows]

    def _get(self, task_id: int) -> ScheduledTask:
        row = self.db.get(ScheduledTask, task_id)
        if row is None:
            raise KeyError(f"Scheduled task {task_id} not found")
        return row

    def complete(self, task_id: int) -> None:
        self._get(task_id).status = COMPLETE
        self._commit(f"complete task {task_id}")

    def fail(self, task_id: int, error: str, retry_at: Optional[int] = None) -> None:
        row = self._get(task_id)
        row.last_error = error
        if retry_at is None:
            row.status = FAILED
        else:
            row.status = PENDING
            row.scheduled_at = int(retry_at)
        self._commit(f"fail task {task_id}")
