"""Runs due scheduled tasks. Start with ``recurring-billing-worker`` or ``python -m recurring_billing_svc.worker``."""
import logging
import signal
import time
from typing import Optional

from recurring_billing_svc import config
from recurring_billing_svc.container import Container, build_container
from recurring_billing_svc.dates import to_timestamp
from recurring_billing_svc.exceptions import InvalidArgument, RenewalOrderCreationError
from recurring_billing_svc.models.base import SessionLocal
from recurring_billing_svc.task_queue import Task

running = True


class TaskRunner:
    """
    Claims due tasks from the queue and hands them to the scheduler.

    A task whose subscription does not resolve, or whose renewal order could
    not be built, fails permanently. Any other error is retried after
    ``retry_delay`` seconds until ``max_attempts`` runs have failed.
    """

    def __init__(
        self,
        container: Container,
        max_attempts: int = config.TASK_MAX_ATTEMPTS,
        retry_delay: int = config.TASK_RETRY_DELAY,
        batch_size: int = config.WORKER_BATCH_SIZE,
    ) -> None:
        self.container = container
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.batch_size = batch_size

    def run_due(self, now: Optional[int] = None) -> int:
        """Run every task due at ``now`` (epoch seconds); returns how many ran."""
        now_ts = now if now is not None else to_timestamp(self.container.state_machine.clock())
        tasks = self.container.queue.claim_due(now_ts, self.batch_size)
        for task in tasks:
            self._run(task, now_ts)
        return len(tasks)

    def _run(self, task: Task, now_ts: int) -> None:
        queue = self.container.queue
        logging.info(f"Running task {task.id} ({task.hook} {task.args}), attempt {task.attempts}")
        try:
            self.container.scheduler.dispatch(task.hook, task.args)
        except (InvalidArgument, RenewalOrderCreationError) as e:
            logging.error(f"Task {task.id} failed permanently: {e}", exc_info=True)
            self.container.db.rollback()
            queue.fail(task.id, str(e))
            return
        except Exception as e:
            logging.error(f"Task {task.id} failed: {e}", exc_info=True)
            self.container.db.rollback()
            if task.attempts < self.max_attempts:
                queue.fail(task.id, str(e), retry_at=now_ts + self.retry_delay)
            else:
                queue.fail(task.id, str(e))
            return
        queue.complete(task.id)


def signal_handler(sig, frame):
    global running
    logging.info("Worker received stop signal")
    running = False


def main():
    logging.basicConfig(level=config.LOG_LEVEL)
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logging.info("Worker started")
    while running:
        db = SessionLocal()
        try:
            ran = TaskRunner(build_container(db)).run_due()
        except Exception as e:
            logging.error(f"Worker loop error: {e}", exc_info=True)
            ran = 0
        finally:
            db.close()
        if not ran:
            time.sleep(config.WORKER_POLL_INTERVAL)
    logging.info("Worker stopped")


if __name__ == "__main__":
    main()
