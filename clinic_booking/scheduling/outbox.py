import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

SYNC_ATTEMPTED = 'attempted'
SYNC_SKIPPED = 'skipped'


@dataclass
class OutboxTask:
    name: str
    func: Callable[..., Any]
    args: tuple = ()


@dataclass
class PostCommitOutbox:
    """Side effects collected during a transaction and run after it commits.

    Each task runs on its own: a failing task is logged and recorded, and the
    remaining tasks still run. Nothing here can undo the committed write.
    """

    tasks: list[OutboxTask] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def add(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        self.tasks.append(OutboxTask(name=name, func=func, args=args))

    def dispatch(self) -> str:
        if not self.tasks:
            return SYNC_SKIPPED

        for task in self.tasks:
            try:
                task.func(*task.args)
            except Exception as exc:
                logger.exception('Post-commit task %s failed', task.name)
                self.failures.append(f'{task.name}: {exc}')

        self.tasks = []
        if self.failures:
            return 'failed: ' + '; '.join(self.failures)
        return SYNC_ATTEMPTED
