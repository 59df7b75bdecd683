"""
Entry sources: the ordered subjects a bulk job acts on.

Every source can be produced again for each server; producing never mutates
the directory.  Sources that need the directory (search results, CSV rows
whose DN is found by searching) do read from it, in generate mode too.
"""

import csv
import io
import logging
from collections.abc import Iterator

import ldap
from ldap.filter import escape_filter_chars

from .changefile import split_records
from .exceptions import (
    AmbiguousMatchError,
    NotFoundError,
    ProtocolError,
    ValidationError,
)
from .membership import MembershipResolver
from .models import ServerTarget, Subject
from .templates import expand, unresolved_placeholders

logger = logging.getLogger(__name__)


class EntrySource:
    """
    Base class for entry sources.

    Subclasses implement :py:meth:`validate` and :py:meth:`produce`, and
    :py:meth:`size` when they know their length without asking a server.
    """

    #: short name used in log messages and the activity log
    name: str = "source"

    def validate(self) -> None:
        """
        Check the source's static configuration.

        Raises:
            ValidationError: something required is missing or malformed

        """

    def produce(self, target: ServerTarget) -> Iterator[Subject]:
        raise NotImplementedError

    def size(self, target: ServerTarget) -> int | None:  # noqa: ARG002
        """Number of subjects :py:meth:`produce` will yield, if known."""
        return None


class RangeSource(EntrySource):
    """
    The integers ``start`` .. ``end``, inclusive, bound to ``{COUNT}``.

    Args:
        start: first value
        end: last value

    """

    name = "range"

    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end

    def validate(self) -> None:
        for label, value in (("Start", self.start), ("End", self.end)):
            if isinstance(value, bool) or not isinstance(value, int):
                msg = f"{label} value must be an integer, got {value!r}"
                raise ValidationError(msg)
        if self.start > self.end:
            msg = f"Start value ({self.start}) must not be greater than end value ({self.end})"
            raise ValidationError(msg)

    def produce(self, target: ServerTarget) -> Iterator[Subject]:  # noqa: ARG002
        for index, count in enumerate(range(self.start, self.end + 1)):
            yield Subject(index=index, bindings={"COUNT": str(count)}, label=f"#{count}")

    def size(self, target: ServerTarget) -> int:  # noqa: ARG002
        return self.end - self.start + 1


class SearchResultSource(EntrySource):
    """
    The entries found by a search, run separately on every server.

    Each entry binds ``{DN}``; its attributes are available as
    ``{ATTRIBUTE}`` placeholders, matched ignoring case.

    Args:
        basedn: where to search
        filterstr: the search filter

    Keyword Args:
        attributes: attributes to fetch; ``None`` for all user attributes
        scope: search scope

    """

    name = "search"

    def __init__(
        self,
        basedn: str,
        filterstr: str,
        attributes: list[str] | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> None:
        self.basedn = basedn
        self.filterstr = filterstr
        self.attributes = attributes
        self.scope = scope
        self._sizes: dict[str, int] = {}

    def validate(self) -> None:
        if not (self.basedn or "").strip():
            msg = "Search base DN is required"
            raise ValidationError(msg)
        if not (self.filterstr or "").strip():
            msg = "Search filter is required"
            raise ValidationError(msg)

    def produce(self, target: ServerTarget) -> Iterator[Subject]:
        entries = target.client.search(
            self.basedn.strip(), self.filterstr.strip(), self.attributes, scope=self.scope
        )
        self._sizes[target.name] = len(entries)
        if not entries:
            logger.info(
                "ldapbulk.sources.search.empty server=%s basedn=%s filter=%s",
                target.name,
                self.basedn,
                self.filterstr,
            )
        for index, entry in enumerate(entries):
            yield Subject(
                index=index,
                bindings={"DN": entry.dn},
                label=entry.dn,
                attributes=entry.attributes,
            )

    def size(self, target: ServerTarget) -> int | None:
        return self._sizes.get(target.name)


class CsvSource(EntrySource):
    """
    Rows of CSV text; column *n* is bound to ``{Cn}``, counting from 1.

    Each row also needs a DN, found one of two ways:

    * ``column``: column ``C1`` holds the DN
    * ``search``: ``search_filter`` is expanded with the row's columns (values
      are filter-escaped) and searched under ``search_base``; exactly one entry
      must match

    Args:
        text: the CSV text

    Keyword Args:
        has_header: skip the first non-blank row
        strip_quotes: treat ``"`` as CSV quoting; when ``False`` quote
            characters are kept as part of the values
        dn_method: ``"column"`` or ``"search"``
        search_filter: filter template for the ``search`` method
        search_base: where to search; the server's base DN if blank

    """

    name = "csv"
    DN_METHODS = ("column", "search")

    def __init__(
        self,
        text: str,
        has_header: bool = False,
        strip_quotes: bool = True,
        dn_method: str = "column",
        search_filter: str | None = None,
        search_base: str | None = None,
    ) -> None:
        self.text = text
        self.has_header = has_header
        self.strip_quotes = strip_quotes
        self.dn_method = dn_method
        self.search_filter = search_filter
        self.search_base = search_base

    def rows(self) -> list[list[str]]:
        """Parse :py:attr:`text` into rows, dropping blank lines and the header."""
        if self.strip_quotes:
            reader = csv.reader(io.StringIO(self.text), skipinitialspace=True)
        else:
            reader = csv.reader(io.StringIO(self.text), quoting=csv.QUOTE_NONE)
        rows = [[value.strip() for value in row] for row in reader]
        rows = [row for row in rows if any(row)]
        if self.has_header and rows:
            rows = rows[1:]
        return rows

    def validate(self) -> None:
        if not (self.text or "").strip():
            msg = "CSV data is required"
            raise ValidationError(msg)
        if self.dn_method not in self.DN_METHODS:
            msg = f"Unknown DN method {self.dn_method!r}; use one of {', '.join(self.DN_METHODS)}"
            raise ValidationError(msg)
        if self.dn_method == "search" and not (self.search_filter or "").strip():
            msg = "A search filter is required when DNs are found by searching"
            raise ValidationError(msg)
        try:
            rows = self.rows()
        except csv.Error as e:
            msg = f"Cannot parse CSV data: {e}"
            raise ValidationError(msg) from e
        if not rows:
            msg = "CSV data has no rows"
            raise ValidationError(msg)

    def _find_dn(self, target: ServerTarget, bindings: dict[str, str]) -> tuple[str, dict]:
        escaped = {name: escape_filter_chars(value) for name, value in bindings.items()}
        filterstr = expand(self.search_filter or "", escaped)
        leftover = unresolved_placeholders(filterstr)
        if leftover:
            msg = f"Search filter references missing columns: {', '.join(leftover)}"
            raise ValidationError(msg)
        basedn = self.search_base or target.basedn
        entries = target.client.search(basedn, filterstr)
        if not entries:
            raise NotFoundError(filterstr, f"No entry found for filter: {filterstr}")
        if len(entries) > 1:
            raise AmbiguousMatchError(filterstr, len(entries))
        return entries[0].dn, entries[0].attributes

    def produce(self, target: ServerTarget) -> Iterator[Subject]:
        for index, row in enumerate(self.rows()):
            bindings = {f"C{n}": value for n, value in enumerate(row, start=1)}
            label = f"Row {index + 1}"
            attributes: dict = {}
            try:
                if self.dn_method == "column":
                    dn = bindings.get("C1", "")
                    if not dn:
                        msg = "DN column (C1) is empty"
                        raise ValidationError(msg)
                else:
                    dn, attributes = self._find_dn(target, bindings)
            except (ValidationError, NotFoundError, AmbiguousMatchError, ProtocolError) as e:
                yield Subject(index=index, bindings=bindings, label=label, error=e)
                continue
            bindings["DN"] = dn
            yield Subject(
                index=index,
                bindings=bindings,
                label=f"{label} ({dn})",
                attributes=attributes,
            )

    def size(self, target: ServerTarget) -> int:  # noqa: ARG002
        return len(self.rows())


class LdifSource(EntrySource):
    """
    The records of a user-supplied LDIF change file, one subject each.

    The subject's payload is the record's text, compiled as-is.
    """

    name = "ldif"

    def __init__(self, text: str) -> None:
        self.text = text

    def validate(self) -> None:
        if not (self.text or "").strip():
            msg = "LDIF content is required"
            raise ValidationError(msg)
        if not split_records(self.text):
            msg = "LDIF content has no change records"
            raise ValidationError(msg)

    def produce(self, target: ServerTarget) -> Iterator[Subject]:  # noqa: ARG002
        for index, record in enumerate(split_records(self.text)):
            lines = record.splitlines()
            label = next((line for line in lines if line.lower().startswith("dn:")), lines[0])
            yield Subject(index=index, bindings={}, label=label, payload=record)

    def size(self, target: ServerTarget) -> int:  # noqa: ARG002
        return len(split_records(self.text))


class MembershipSource(EntrySource):
    """
    Validated members of a group membership change.

    Producing on a server validates every user id there, then reads and
    classifies the group.  Valid members are yielded first, in input order,
    followed by the ids that failed validation.

    Args:
        group_dn: the group to change
        user_ids: user ids (``uid`` values) to add or remove

    Keyword Args:
        user_base_dn: where to look for users; the server's base DN if blank

    """

    name = "members"

    def __init__(
        self, group_dn: str, user_ids: list[str], user_base_dn: str | None = None
    ) -> None:
        self.group_dn = group_dn
        self.user_ids = user_ids
        self.user_base_dn = user_base_dn
        #: server name -> resolver, kept so callers can inspect the outcome
        self.resolvers: dict[str, MembershipResolver] = {}

    def validate(self) -> None:
        if not (self.group_dn or "").strip():
            msg = "Group DN is required"
            raise ValidationError(msg)
        if not self.user_ids:
            msg = "At least one user id is required"
            raise ValidationError(msg)

    def produce(
        self, target: ServerTarget, continue_on_error: bool = False
    ) -> Iterator[Subject]:
        resolver = MembershipResolver(
            target, self.group_dn.strip(), (self.user_base_dn or "").strip() or None
        )
        self.resolvers[target.name] = resolver
        candidates, failures = resolver.resolve(self.user_ids, continue_on_error)
        yield from candidates
        yield from failures

    def size(self, target: ServerTarget) -> int:  # noqa: ARG002
        return len(self.user_ids)
