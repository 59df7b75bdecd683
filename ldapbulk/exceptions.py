"""
Exceptions raised by the bulk mutation engine.

Validation errors abort a run before any server is touched.  Everything else
is scoped to a single subject (or a single server, for connection-level
failures) and is counted in the run summary.
"""

from typing import Any


class BulkError(Exception):
    """Base class for all bulk engine errors."""


class ValidationError(BulkError):
    """
    Malformed or missing required input, detected before any server call.
    """


class NotFoundError(BulkError):
    """
    A subject could not be resolved: the search returned no entries.

    Args:
        identifier: the user id, filter or DN that was looked up

    Keyword Args:
        message: override for the default message

    """

    def __init__(self, identifier: str, message: str | None = None) -> None:
        self.identifier = identifier
        super().__init__(message or f"Not found: {identifier}")


class AmbiguousMatchError(BulkError):
    """
    A subject could not be resolved: the search returned more than one entry.

    Args:
        identifier: the user id, filter or DN that was looked up
        count: how many entries matched

    Keyword Args:
        message: override for the default message

    """

    def __init__(
        self, identifier: str, count: int, message: str | None = None
    ) -> None:
        self.identifier = identifier
        self.count = count
        super().__init__(
            message or f"Multiple entries ({count}) found for: {identifier}"
        )


class UnsupportedGroupType(BulkError):
    """
    The group entry carries none of the object classes we know how to manage.
    """

    def __init__(self, dn: str, objectclasses: list[str]) -> None:
        self.dn = dn
        self.objectclasses = objectclasses
        super().__init__(
            f"Unsupported group type for {dn}: objectClass={', '.join(objectclasses)}"
        )


class UnsupportedControl(BulkError):
    """
    A protocol control was requested but the server does not advertise it.
    """

    def __init__(self, server: str, oid: str, feature_name: str) -> None:
        self.server = server
        self.oid = oid
        self.feature_name = feature_name
        super().__init__(
            f"LDAP server '{server}' does not support the {feature_name} "
            f"request control (OID: {oid})"
        )


class TemplateError(BulkError):
    """
    A template expanded to text that is not a usable LDIF change record.
    """


class MembershipRejected(BulkError):
    """
    The group membership resolver refused to attempt any mutation.

    Args:
        message: why the operation was rejected

    Keyword Args:
        failures: per-identifier validation failures already collected, as
            :py:class:`~ldapbulk.models.ExecutionResult` objects

    """

    def __init__(self, message: str, failures: list[Any] | None = None) -> None:
        self.failures = failures or []
        super().__init__(message)


class ProtocolError(BulkError):
    """
    A wrapped failure reported by the directory server.

    Args:
        result_code: the LDAP result code, or ``None`` if the client library
            did not report one
        description: the server's short description of the error

    Keyword Args:
        info: additional diagnostic text from the server
        dn: the DN the failed operation targeted

    """

    def __init__(
        self,
        result_code: int | None,
        description: str,
        info: str = "",
        dn: str | None = None,
    ) -> None:
        self.result_code = result_code
        self.description = description
        self.info = info
        self.dn = dn
        msg = description
        if info:
            msg = f"{msg}: {info}"
        if result_code is not None:
            msg = f"{msg} (result code {result_code})"
        super().__init__(msg)

    @classmethod
    def from_ldap_error(cls, error: Any, dn: str | None = None) -> "ProtocolError":
        """
        Build a :py:class:`ProtocolError` from a python-ldap exception.

        python-ldap puts a dict with ``result``, ``desc`` and ``info`` keys in
        ``args[0]``; older servers or local errors may leave some out.
        """
        details: dict[str, Any] = {}
        if error.args and isinstance(error.args[0], dict):
            details = error.args[0]
        return cls(
            details.get("result"),
            details.get("desc", type(error).__name__),
            info=details.get("info", ""),
            dn=dn,
        )
