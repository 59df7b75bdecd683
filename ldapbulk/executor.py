"""
The mutation executor: runs one bulk job against one or more servers.

Servers are processed one after another in the order given, and the subjects
on each server one after another in source order.  Each server is an
independent unit of failure: a subject failure may stop the rest of that
server's subjects (when ``continue_on_error`` is off) and a server-level
failure counts every remaining subject on that server as failed, but the
next server always runs.

Execute and generate mode compile exactly the same changes.  They differ
only in what happens to each change: execute mode sends it to the server,
generate mode renders it into the change file.
"""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import ldap

from .activity import ActivityLog, Category
from .capabilities import ServerCapabilities
from .changefile import format_change, section
from .client import NO_OPERATION_OID, PERMISSIVE_MODIFY_OID
from .conf import get_setting
from .exceptions import BulkError, MembershipRejected, ProtocolError, ValidationError
from .jobs import BulkJob
from .models import (
    BulkRunSummary,
    ChangeType,
    ExecutionResult,
    GeneratedChange,
    RunMode,
    RunState,
    ServerSummary,
    ServerTarget,
    Subject,
)

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """
    Per-run configuration.

    Keyword Args:
        mode: execute the changes, or only generate the change file
        continue_on_error: keep going on a server after a subject fails
        permissive_modify: send the Permissive Modify control with every modify
        no_operation: send the No-Op control with every update
        strict_placeholders: leftover ``{NAME}`` tokens are a template error

    """

    mode: RunMode = RunMode.EXECUTE
    continue_on_error: bool = field(default_factory=lambda: get_setting("CONTINUE_ON_ERROR"))
    permissive_modify: bool = False
    no_operation: bool = False
    strict_placeholders: bool = field(
        default_factory=lambda: get_setting("STRICT_PLACEHOLDERS")
    )


class EventKind(str, enum.Enum):
    RUN_STARTED = "run.started"
    SERVER_STARTED = "server.started"
    SUBJECT_FINISHED = "subject.finished"
    SERVER_FINISHED = "server.finished"
    RUN_FINISHED = "run.finished"


@dataclass(frozen=True)
class RunEvent:
    """A progress event.  Presentation code subscribes to these."""

    kind: EventKind
    server: str | None = None
    processed: int = 0
    total: int | None = None
    result: ExecutionResult | None = None
    message: str = ""


EventHandler = Callable[[RunEvent], None]


def _failure(subject: Subject, error: Exception) -> ExecutionResult:
    return ExecutionResult(
        subject_index=subject.index,
        label=subject.label,
        success=False,
        error_kind=type(error).__name__,
        error_detail=str(error),
    )


class MutationExecutor:
    """
    Run one bulk job.

    An executor is good for one run; create a new one for every run.

    Args:
        job: what to do
        targets: the servers to do it on, in order

    Keyword Args:
        options: per-run options; defaults come from settings
        activity: activity log to record changes and summaries in
        on_event: called with each :py:class:`RunEvent`, in the running thread

    """

    def __init__(
        self,
        job: BulkJob,
        targets: list[ServerTarget],
        options: RunOptions | None = None,
        activity: ActivityLog | None = None,
        on_event: EventHandler | None = None,
    ) -> None:
        self.job = job
        self.targets = list(targets)
        self.options = options or RunOptions()
        self.activity = activity
        self.on_event = on_event
        self.capabilities = ServerCapabilities()
        self.state = RunState.IDLE

    def _emit(self, kind: EventKind, **kwargs) -> None:
        if self.on_event is not None:
            self.on_event(RunEvent(kind=kind, **kwargs))

    @property
    def generate(self) -> bool:
        return self.options.mode == RunMode.GENERATE

    # -----------------------
    # Validation
    # -----------------------

    def validate(self) -> None:
        """
        Check every static input.

        Raises:
            ValidationError: the run cannot start

        """
        self.state = RunState.VALIDATING
        if not self.targets:
            msg = "At least one server is required"
            raise ValidationError(msg)
        self.job.validate()

    # -----------------------
    # Applying changes
    # -----------------------

    def _controls(self, target: ServerTarget, change: GeneratedChange) -> list[str]:
        controls: list[str] = []
        if self.options.no_operation:
            self.capabilities.require(target, NO_OPERATION_OID)
            controls.append(NO_OPERATION_OID)
        if self.options.permissive_modify and change.changetype == ChangeType.MODIFY:
            self.capabilities.require(target, PERMISSIVE_MODIFY_OID)
            controls.append(PERMISSIVE_MODIFY_OID)
        return controls

    def apply_change(self, target: ServerTarget, change: GeneratedChange) -> None:
        """
        Send one change to ``target``.

        Raises:
            UnsupportedControl: a requested control is not supported
            ProtocolError: the server rejected the change

        """
        controls = self._controls(target, change) or None
        client = target.client
        if change.changetype == ChangeType.ADD:
            client.add(change.dn, change.attributes, controls=controls)
        elif change.changetype == ChangeType.MODIFY:
            client.modify(change.dn, change.modifications, controls=controls)
        elif change.changetype == ChangeType.DELETE:
            client.delete(change.dn, controls=controls)
        elif change.changetype == ChangeType.MODDN:
            client.rename(
                change.dn,
                change.new_rdn or "",
                new_superior=change.new_superior,
                delete_old_rdn=change.delete_old_rdn,
                controls=controls,
            )

    def process(
        self, target: ServerTarget, subject: Subject, server: ServerSummary
    ) -> ExecutionResult:
        """
        Compile one subject, then apply or render its changes.

        The subject fails on its first failing change; changes after that
        one are not attempted.
        """
        if subject.error is not None:
            return _failure(subject, subject.error)
        try:
            changes = self.job.compile(subject, target, self.options)
        except BulkError as e:
            logger.warning(
                "ldapbulk.executor.compile.failed server=%s subject=%s error=%s",
                target.name,
                subject.label,
                e,
            )
            return _failure(subject, e)

        if self.generate:
            server.change_texts.extend(format_change(change) for change in changes)
            return ExecutionResult(subject_index=subject.index, label=subject.label, success=True)

        soft = False
        for change in changes:
            try:
                self.apply_change(target, change)
            except ProtocolError as e:
                if e.result_code in change.soft_errors:
                    logger.info(
                        "ldapbulk.executor.change.soft server=%s dn=%s code=%s",
                        target.name,
                        change.dn,
                        e.result_code,
                    )
                    soft = True
                    continue
                logger.warning(
                    "ldapbulk.executor.change.failed server=%s dn=%s error=%s",
                    target.name,
                    change.dn,
                    e,
                )
                return _failure(subject, e)
            except BulkError as e:
                logger.warning(
                    "ldapbulk.executor.change.failed server=%s dn=%s error=%s",
                    target.name,
                    change.dn,
                    e,
                )
                return _failure(subject, e)
            if self.activity is not None:
                self.activity.log_modification(
                    target.name,
                    f"Applied {change.changetype.value} to {change.dn}",
                    change.dn,
                    ldif_data=format_change(change),
                )
        return ExecutionResult(
            subject_index=subject.index, label=subject.label, success=True, soft=soft
        )

    # -----------------------
    # Servers
    # -----------------------

    def _remaining(self, target: ServerTarget, processed: int) -> int:
        total = self.job.size(target)
        if total is None:
            return 1
        return max(total - processed, 1)

    def run_server(self, target: ServerTarget) -> ServerSummary:
        """Process every subject on one server."""
        server = ServerSummary(name=target.name, state=RunState.EXECUTING)
        self._emit(EventKind.SERVER_STARTED, server=target.name)
        logger.info(
            "ldapbulk.executor.server.started server=%s job=%s mode=%s",
            target.name,
            self.job.describe(),
            self.options.mode.value,
        )
        processed = 0
        try:
            for subject in self.job.subjects(target, self.options):
                result = self.process(target, subject, server)
                server.record(result)
                processed += 1
                self._emit(
                    EventKind.SUBJECT_FINISHED,
                    server=target.name,
                    processed=processed,
                    total=self.job.size(target),
                    result=result,
                )
                if not result.success and not self.options.continue_on_error:
                    server.state = RunState.ABORTED
                    logger.warning(
                        "ldapbulk.executor.server.aborted server=%s subject=%s",
                        target.name,
                        subject.label,
                    )
                    break
        except MembershipRejected as e:
            for result in e.failures:
                server.record(result)
                processed += 1
            total = self.job.size(target)
            remaining = max(total - processed, 0) if total is not None else 0
            server.fail_remaining(remaining, str(e))
            logger.error(
                "ldapbulk.executor.server.rejected server=%s error=%s", target.name, e
            )
        except BulkError as e:
            server.fail_remaining(self._remaining(target, processed), str(e))
            logger.error("ldapbulk.executor.server.failed server=%s error=%s", target.name, e)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            detail = str(ProtocolError.from_ldap_error(e))
            server.fail_remaining(self._remaining(target, processed), detail)
            logger.error(
                "ldapbulk.executor.server.failed server=%s error=%s", target.name, detail
            )
        if server.state != RunState.ABORTED:
            server.state = RunState.COMPLETED
        self.job.finish(target, server)
        logger.info(
            "ldapbulk.executor.server.finished server=%s successes=%d errors=%d",
            target.name,
            server.success_count,
            server.error_count,
        )
        self._log_server(target, server)
        self._emit(
            EventKind.SERVER_FINISHED,
            server=target.name,
            processed=processed,
            message=f"{server.success_count} successes, {server.error_count} errors",
        )
        return server

    def _log_server(self, target: ServerTarget, server: ServerSummary) -> None:
        if self.activity is None:
            return
        if (
            self.job.category == Category.IMPORT
            and not self.generate
            and not server.error_count
        ):
            self.activity.log_import(target.name, self.job.source.name, server.success_count)
            return
        verb = "Generated LDIF for" if self.generate else "Processed"
        message = (
            f"{verb} {server.success_count} entries with {server.error_count} errors"
        )
        kwargs = {
            "details": "\n".join(server.errors) or None,
            "server_name": target.name,
            "ldif_data": section(target.name, server.change_texts) if self.generate else None,
        }
        if server.error_count:
            self.activity.warning(self.job.category, message, **kwargs)
        else:
            self.activity.info(self.job.category, message, **kwargs)

    # -----------------------
    # The run
    # -----------------------

    def run(self) -> BulkRunSummary:
        """
        Validate, then process every server.

        Raises:
            ValidationError: the run could not start; no server was touched

        Returns:
            The run summary.

        """
        self.validate()
        self.state = RunState.EXECUTING
        self._emit(EventKind.RUN_STARTED, total=len(self.targets))
        servers = [self.run_server(target) for target in self.targets]
        self.state = (
            RunState.ABORTED
            if any(s.state == RunState.ABORTED for s in servers)
            else RunState.COMPLETED
        )
        summary = BulkRunSummary(state=self.state, mode=self.options.mode, servers=servers)
        if self.generate:
            summary.change_file = "\n".join(section(s.name, s.change_texts) for s in servers)
            summary.file_name = self.job.file_name
        logger.info(
            "ldapbulk.executor.run.finished state=%s successes=%d errors=%d servers=%d",
            self.state.value,
            summary.success_count,
            summary.error_count,
            len(servers),
        )
        self._emit(EventKind.RUN_FINISHED, message=summary.message())
        return summary
