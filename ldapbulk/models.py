"""
Data model for bulk runs.

Everything here is created fresh for one bulk run and discarded when the run
completes.  Only the directory connection outlives a run, and that belongs to
the caller.
"""

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .client import DirectoryClient


class ChangeType(str, enum.Enum):
    """The kinds of LDIF change record we can compile and apply."""

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"
    MODDN = "moddn"


class ModOp(str, enum.Enum):
    """Modify clause operations, named as they appear in LDIF."""

    ADD = "add"
    DELETE = "delete"
    REPLACE = "replace"
    INCREMENT = "increment"


class RunMode(str, enum.Enum):
    #: apply each change against the directory
    EXECUTE = "execute"
    #: only produce the change file
    GENERATE = "generate"


class RunState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ServerTarget:
    """
    One directory endpoint participating in a bulk run.

    Args:
        name: the server's name, as in ``settings.LDAP_SERVERS``
        basedn: the default base DN for searches on this server
        client: the connection handle; owned by the caller, never closed here

    """

    name: str
    basedn: str
    client: "DirectoryClient" = field(compare=False, repr=False)

    @classmethod
    def from_settings(cls, name: str, key: str = "write") -> "ServerTarget":
        """
        Connect to the server named ``name`` in ``settings.LDAP_SERVERS``.

        When the server block has no ``basedn``, the first naming context
        advertised by the server is used instead.
        """
        from .client import DirectoryClient  # noqa: PLC0415
        from .conf import get_server_config  # noqa: PLC0415

        config = get_server_config(name)
        client = DirectoryClient.from_config(config[key], name=name)
        basedn = config.get("basedn") or ""
        if not basedn:
            contexts = client.naming_contexts()
            basedn = contexts[0] if contexts else ""
        return cls(name=name, basedn=basedn, client=client)


@dataclass(frozen=True)
class Modification:
    """One modify clause: an operation on one attribute."""

    op: ModOp
    attribute: str
    values: tuple[str, ...] = ()


@dataclass
class GeneratedChange:
    """
    One compiled directory mutation.

    Exactly one of ``attributes`` (add) or ``modifications`` (modify) is
    meaningful, depending on ``changetype``; delete needs only the DN and
    moddn uses the ``new_rdn`` group of fields.

    Args:
        dn: target DN
        changetype: the operation to perform

    Keyword Args:
        attributes: attribute map for an add
        modifications: modify clauses for a modify
        new_rdn: new RDN for a moddn
        delete_old_rdn: whether a moddn removes the old RDN value
        new_superior: new parent DN for a moddn, if moving
        subject_index: index of the subject this change was compiled from
        soft_errors: LDAP result codes that count as success for this change

    """

    dn: str
    changetype: ChangeType
    attributes: dict[str, list[str]] = field(default_factory=dict)
    modifications: list[Modification] = field(default_factory=list)
    new_rdn: str | None = None
    delete_old_rdn: bool = True
    new_superior: str | None = None
    subject_index: int = 0
    soft_errors: frozenset[int] = frozenset()


@dataclass
class Subject:
    """
    One unit of work from an entry source.

    Args:
        index: position in the source's order, starting at 0
        bindings: placeholder name -> value; names are case-sensitive
        label: how the subject appears in diagnostics

    Keyword Args:
        attributes: the subject's directory attributes, for attribute-name
            placeholders which are matched case-insensitively
        payload: source-specific data the job needs to compile this subject
        error: set when the source could not resolve this subject; the
            subject is counted as failed without compiling anything

    """

    index: int
    bindings: dict[str, str]
    label: str
    attributes: dict[str, list[str]] = field(default_factory=dict)
    payload: Any = None
    error: Exception | None = None


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of applying (or compiling, in generate mode) one subject."""

    subject_index: int
    label: str
    success: bool
    error_kind: str | None = None
    error_detail: str | None = None
    #: the change succeeded only because its error was in ``soft_errors``
    soft: bool = False


@dataclass
class ServerSummary:
    """Per-server accounting for one bulk run."""

    name: str
    state: RunState = RunState.IDLE
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[ExecutionResult] = field(default_factory=list)
    change_texts: list[str] = field(default_factory=list)
    #: a server-level failure stopped this server before all subjects ran
    fatal: str | None = None

    def record(self, result: ExecutionResult) -> None:
        self.results.append(result)
        if result.success:
            self.success_count += 1
        else:
            self.error_count += 1
            self.errors.append(f"{result.label}: {result.error_detail}")

    def fail_remaining(self, count: int, detail: str) -> None:
        """Count ``count`` subjects as failed because of a server-level error."""
        self.error_count += count
        self.fatal = detail
        self.errors.append(f"Server failure: {detail}")


@dataclass
class BulkRunSummary:
    """Aggregate outcome across all servers and subjects."""

    state: RunState
    mode: RunMode
    servers: list[ServerSummary] = field(default_factory=list)
    change_file: str | None = None
    file_name: str | None = None

    @property
    def success_count(self) -> int:
        return sum(s.success_count for s in self.servers)

    @property
    def error_count(self) -> int:
        return sum(s.error_count for s in self.servers)

    @property
    def error_detail(self) -> str:
        """Concatenated diagnostic text, one block per server with errors."""
        lines: list[str] = []
        for server in self.servers:
            if not server.errors:
                continue
            lines.append(
                f"Server '{server.name}': {server.success_count} successes, "
                f"{server.error_count} errors"
            )
            lines.extend(f"  {error}" for error in server.errors)
        return "\n".join(lines)

    def server(self, name: str) -> ServerSummary:
        for server in self.servers:
            if server.name == name:
                return server
        raise KeyError(name)

    def message(self) -> str:
        """A one-line human summary, as shown at the end of a run."""
        count = len(self.servers)
        if self.mode == RunMode.GENERATE:
            return (
                f"LDIF generated for {self.success_count} entries across "
                f"{count} server(s) with {self.error_count} errors"
            )
        if self.error_count:
            return (
                f"Bulk operation completed with {self.success_count} successes "
                f"and {self.error_count} errors across {count} server(s)"
            )
        return (
            f"Bulk operation completed successfully. {self.success_count} entries "
            f"processed across {count} server(s)"
        )
