"""
Running bulk jobs in the background.

Each bulk run gets its own worker thread.  Progress events and the final
result are handed to a ``dispatch`` callable, which is how callers get them
onto their own thread; by default they are simply called in the worker.
"""

import logging
import threading
from collections.abc import Callable

from .activity import ActivityLog
from .exceptions import ValidationError
from .executor import EventHandler, MutationExecutor, RunEvent, RunOptions
from .jobs import BulkJob
from .models import BulkRunSummary, ServerTarget
from .typing import Dispatcher

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[BulkRunSummary | None, BaseException | None], None]


def _direct(func: Callable[[], None]) -> None:
    func()


class BulkRun:
    """
    Handle for one submitted bulk run.

    Args:
        executor: the executor doing the work
        on_complete: called once with ``(summary, None)`` on success or
            ``(None, error)`` if the run could not complete

    Keyword Args:
        dispatch: how to deliver callbacks

    """

    def __init__(
        self,
        executor: MutationExecutor,
        on_complete: CompletionCallback,
        dispatch: Dispatcher | None = None,
    ) -> None:
        self.executor = executor
        self.on_complete = on_complete
        self.dispatch = dispatch or _direct
        self.summary: BulkRunSummary | None = None
        self.error: BaseException | None = None
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._work, name=f"ldapbulk-{id(self):x}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def _work(self) -> None:
        try:
            self.summary = self.executor.run()
        except ValidationError as e:
            logger.warning("ldapbulk.runner.rejected error=%s", e)
            self.error = e
        except Exception as e:
            logger.exception("ldapbulk.runner.failed")
            self.error = e
        finally:
            summary, error = self.summary, self.error
            self.dispatch(lambda: self.on_complete(summary, error))
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def state(self):
        return self.executor.state

    def wait(self, timeout: float | None = None) -> bool:
        """
        Wait for the run to finish.

        Returns:
            ``True`` if it finished within ``timeout``.

        """
        self._thread.join(timeout)
        return not self._thread.is_alive()


class BulkRunner:
    """
    Start bulk runs on background threads.

    Keyword Args:
        activity: activity log shared by every run this runner starts

    """

    def __init__(self, activity: ActivityLog | None = None) -> None:
        self.activity = activity

    def submit(
        self,
        job: BulkJob,
        targets: list[ServerTarget],
        options: RunOptions,
        on_complete: CompletionCallback,
        on_event: EventHandler | None = None,
        dispatch: Dispatcher | None = None,
    ) -> BulkRun:
        """
        Start running ``job`` against ``targets``.

        There is no way to cancel a run once it has started.

        Returns:
            The run's handle.

        """
        deliver = dispatch or _direct
        handler: EventHandler | None = None
        if on_event is not None:

            def handler(event: RunEvent) -> None:
                deliver(lambda: on_event(event))

        executor = MutationExecutor(
            job, targets, options=options, activity=self.activity, on_event=handler
        )
        run = BulkRun(executor, on_complete, dispatch=deliver)
        logger.info(
            "ldapbulk.runner.submitted job=%s servers=%s mode=%s",
            job.describe(),
            ",".join(t.name for t in targets),
            options.mode.value,
        )
        run.start()
        return run
