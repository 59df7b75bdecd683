"""
Group membership resolution.

Adding a user to a group means different things depending on the kind of
group:

* ``posixGroup``: add the user's uid to ``memberUid`` on the group
* ``groupOfNames``: add the user's DN to ``member`` on the group
* ``groupOfUniqueNames``: add the user's DN to ``uniqueMember`` on the group
* ``groupOfURLs``: change the *user's* entry so that it matches the group's
  ``memberURL`` filter

Each kind is a :py:class:`MembershipStrategy`; :py:func:`strategy_for` picks
one after the group has been read and classified.
"""

import enum
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import ldapurl
from ldap_filter import Filter, ParseError

from .client import DirectoryEntry
from .exceptions import (
    AmbiguousMatchError,
    BulkError,
    MembershipRejected,
    NotFoundError,
    ProtocolError,
    UnsupportedGroupType,
)
from .models import (
    ChangeType,
    ExecutionResult,
    GeneratedChange,
    Modification,
    ModOp,
    ServerTarget,
    Subject,
)

logger = logging.getLogger(__name__)

#: LDAP result codes for "attribute or value exists" and "no such attribute"
TYPE_OR_VALUE_EXISTS = 20
NO_SUCH_ATTRIBUTE = 16

#: attributes a dynamic group filter may not constrain
FORBIDDEN_ATTRIBUTES = frozenset({"uid", "cn"})

#: one simple filter item as written, before any unescaping
SIMPLE_ITEM_RE = re.compile(r"\(\s*[^()&|!=<>~\s]+\s*(?:=|~=|>=|<=)([^()]*)\)")


class GroupType(str, enum.Enum):
    STATIC_UID = "static-uid"
    STATIC_DN = "static-dn"
    DYNAMIC = "dynamic"
    UNKNOWN = "unknown"


class MembershipState(str, enum.Enum):
    UNRESOLVED = "unresolved"
    CLASSIFIED = "classified"
    APPLIED = "applied"
    REJECTED = "rejected"


#: object class -> (group type, member attribute), in priority order
CLASSIFICATION: tuple[tuple[str, GroupType, str | None], ...] = (
    ("groupofurls", GroupType.DYNAMIC, None),
    ("posixgroup", GroupType.STATIC_UID, "memberUid"),
    ("groupofnames", GroupType.STATIC_DN, "member"),
    ("groupofuniquenames", GroupType.STATIC_DN, "uniqueMember"),
)


@dataclass(frozen=True)
class GroupDescriptor:
    """
    A group entry, classified.

    ``member_attribute`` is ``None`` for dynamic groups, whose membership is
    not stored on the group.
    """

    dn: str
    objectclasses: frozenset[str]
    group_type: GroupType
    member_attribute: str | None = None
    member_urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class MemberCandidate:
    """A user whose entry has been found exactly once."""

    uid: str
    dn: str


@dataclass(frozen=True)
class DynamicGroupConstraint:
    """One ``attribute=value`` term of a dynamic group's filter."""

    attribute: str
    value: str


def parse_user_ids(text: str) -> list[str]:
    """
    Parse user ids from text, one per line.

    Blank lines and lines starting with ``#`` are skipped.
    """
    ids: list[str] = []
    for line in text.splitlines():
        line = line.strip()  # noqa: PLW2901
        if line and not line.startswith("#"):
            ids.append(line)
    return ids


# -----------------------
# Classification
# -----------------------


def classify(entry: DirectoryEntry) -> GroupDescriptor:
    """
    Classify a group entry by its object classes.

    The first matching rule wins: ``groupOfURLs``, then ``posixGroup``, then
    ``groupOfNames``, then ``groupOfUniqueNames``.  Object class names are
    compared case-insensitively.

    Raises:
        UnsupportedGroupType: none of the four object classes is present

    """
    objectclasses = entry.values("objectClass")
    lowered = frozenset(oc.lower() for oc in objectclasses)
    for objectclass, group_type, attribute in CLASSIFICATION:
        if objectclass in lowered:
            descriptor = GroupDescriptor(
                dn=entry.dn,
                objectclasses=lowered,
                group_type=group_type,
                member_attribute=attribute,
                member_urls=tuple(entry.values("memberURL")),
            )
            logger.debug(
                "ldapbulk.membership.classified dn=%s type=%s attribute=%s",
                entry.dn,
                group_type.value,
                attribute,
            )
            return descriptor
    raise UnsupportedGroupType(entry.dn, objectclasses)


# -----------------------
# Member validation
# -----------------------


def user_filter(uid: str) -> str:
    """The search filter that finds the user entry for ``uid``."""
    return Filter.AND(
        [
            Filter.OR(
                [
                    Filter.attribute("objectClass").equal_to("posixAccount"),
                    Filter.attribute("objectClass").equal_to("inetOrgPerson"),
                ]
            ),
            Filter.attribute("uid").equal_to(uid),
        ]
    ).to_string()


class MemberValidator:
    """
    Resolve user ids to :py:class:`MemberCandidate` objects.

    Args:
        target: the server to search
        basedn: where to search for users; the server's base DN if blank

    """

    def __init__(self, target: ServerTarget, basedn: str | None = None) -> None:
        self.target = target
        self.basedn = basedn or target.basedn

    def resolve(self, uid: str) -> MemberCandidate:
        """
        Find the one user entry for ``uid``.

        Raises:
            NotFoundError: no entry matched
            AmbiguousMatchError: more than one entry matched
            ProtocolError: the search itself failed

        """
        entries = self.target.client.search(self.basedn, user_filter(uid), ["uid"])
        if not entries:
            raise NotFoundError(uid, f"User not found: {uid}")
        if len(entries) > 1:
            raise AmbiguousMatchError(uid, len(entries), f"Multiple users found for: {uid}")
        entry = entries[0]
        return MemberCandidate(uid=entry.first("uid") or uid, dn=entry.dn)

    def validate(
        self, user_ids: Iterable[str], continue_on_error: bool = False
    ) -> tuple[list[Subject], list[Subject]]:
        """
        Validate every user id.

        When ``continue_on_error`` is ``False`` validation stops at the first
        failure; ids after it are not looked up at all.

        Returns:
            ``(candidates, failures)``.  Both are lists of subjects indexed by
            the id's position in ``user_ids``; candidate subjects carry a
            :py:class:`MemberCandidate` as their payload, failed ones carry
            the error.

        """
        candidates: list[Subject] = []
        failures: list[Subject] = []
        for index, uid in enumerate(user_ids):
            try:
                candidate = self.resolve(uid)
            except (NotFoundError, AmbiguousMatchError, ProtocolError) as e:
                logger.warning(
                    "ldapbulk.membership.validate.failed server=%s uid=%s error=%s",
                    self.target.name,
                    uid,
                    e,
                )
                failures.append(Subject(index=index, bindings={"UID": uid}, label=uid, error=e))
                if not continue_on_error:
                    break
                continue
            candidates.append(
                Subject(
                    index=index,
                    bindings={"UID": candidate.uid, "DN": candidate.dn},
                    label=uid,
                    payload=candidate,
                )
            )
        logger.info(
            "ldapbulk.membership.validated server=%s valid=%d invalid=%d",
            self.target.name,
            len(candidates),
            len(failures),
        )
        return candidates, failures


# -----------------------
# Dynamic group filters
# -----------------------

def _walk(node, constraints: list[tuple[str, str, str]], nested: list[str]) -> None:
    if node.type == "filter":
        constraints.append((node.attr, node.comp, node.val))
        return
    if node.comp != "&":
        nested.append(node.comp)
    for child in node.filters:
        _walk(child, constraints, nested)


def parse_member_url(url: str) -> list[DynamicGroupConstraint]:
    """
    Extract ``attribute=value`` constraints from a ``memberURL``.

    Only flat AND-conjunctions are really understood.  Terms found inside OR
    or NOT groups are still extracted as if they were ANDed, and a warning is
    logged; we do not evaluate boolean filter logic.

    Raises:
        MembershipRejected: the URL has no filter, the filter does not parse,
            it uses a comparison other than equality, it constrains ``uid``
            or ``cn``, or a value contains a wildcard

    """
    try:
        filterstr = ldapurl.LDAPUrl(url).filterstr
    except ValueError as e:
        msg = f"Invalid memberURL {url!r}: {e}"
        raise MembershipRejected(msg) from e
    if not filterstr:
        msg = f"memberURL {url!r} has no search filter"
        raise MembershipRejected(msg)
    try:
        tree = Filter.parse(filterstr)
    except ParseError as e:
        msg = f"Cannot parse memberURL filter {filterstr!r}: {e}"
        raise MembershipRejected(msg) from e

    terms: list[tuple[str, str, str]] = []
    nested: list[str] = []
    _walk(tree, terms, nested)
    if nested:
        logger.warning(
            "ldapbulk.membership.filter.nested filter=%s operators=%s",
            filterstr,
            "".join(sorted(set(nested))),
        )

    raw_values = [m.group(1) for m in SIMPLE_ITEM_RE.finditer(filterstr)]
    if len(raw_values) != len(terms):
        raw_values = [value for _, _, value in terms]
    constraints: list[DynamicGroupConstraint] = []
    for (attribute, comp, value), raw_value in zip(terms, raw_values):
        if comp != "=":
            msg = (
                f"Dynamic group filter {filterstr!r} uses {attribute}{comp}, which "
                f"cannot be satisfied by setting an attribute value"
            )
            raise MembershipRejected(msg)
        if attribute.lower() in FORBIDDEN_ATTRIBUTES:
            msg = (
                f"Dynamic group filter {filterstr!r} constrains {attribute!r}, "
                f"which identifies users rather than grouping them"
            )
            raise MembershipRejected(msg)
        if "*" in raw_value:
            msg = (
                f"Dynamic group filter {filterstr!r} uses a wildcard for "
                f"{attribute!r}; only exact values can be applied"
            )
            raise MembershipRejected(msg)
        constraints.append(DynamicGroupConstraint(attribute, value))
    if not constraints:
        msg = f"Dynamic group filter {filterstr!r} has no attribute constraints"
        raise MembershipRejected(msg)
    return constraints


# -----------------------
# Strategies
# -----------------------


class MembershipStrategy:
    """
    How to add users to, or remove users from, one kind of group.

    Args:
        group: the classified group

    """

    group_type: GroupType = GroupType.UNKNOWN

    def __init__(self, group: GroupDescriptor) -> None:
        self.group = group

    def changes(self, candidate: MemberCandidate, is_add: bool) -> list[GeneratedChange]:
        """Return the changes that add (or remove) ``candidate``."""
        raise NotImplementedError

    def apply(
        self, candidates: Iterable[MemberCandidate], is_add: bool
    ) -> Iterator[tuple[MemberCandidate, list[GeneratedChange]]]:
        """Yield each candidate with the changes that apply to it."""
        for candidate in candidates:
            yield candidate, self.changes(candidate, is_add)


class StaticMembership(MembershipStrategy):
    """Membership stored as values of one attribute on the group entry."""

    #: which attribute of the candidate goes into the member attribute
    value_field: str = "dn"

    def changes(self, candidate: MemberCandidate, is_add: bool) -> list[GeneratedChange]:
        value = getattr(candidate, self.value_field)
        op = ModOp.ADD if is_add else ModOp.DELETE
        return [
            GeneratedChange(
                dn=self.group.dn,
                changetype=ChangeType.MODIFY,
                modifications=[
                    Modification(op, self.group.member_attribute or "member", (value,))
                ],
            )
        ]


class PosixGroupMembership(StaticMembership):
    group_type = GroupType.STATIC_UID
    value_field = "uid"


class DnGroupMembership(StaticMembership):
    group_type = GroupType.STATIC_DN
    value_field = "dn"


class DynamicGroupMembership(MembershipStrategy):
    """
    Membership computed from the group's ``memberURL`` filter.

    Joining means adding each constraint value to the user's own entry;
    leaving means deleting them again, except for ``objectClass`` values.
    Adding a value the user already has, or deleting one they lack, counts
    as success.
    """

    group_type = GroupType.DYNAMIC

    def __init__(self, group: GroupDescriptor) -> None:
        super().__init__(group)
        if len(group.member_urls) != 1:
            msg = (
                f"Dynamic group {group.dn} must have exactly one memberURL, "
                f"found {len(group.member_urls)}"
            )
            raise MembershipRejected(msg)
        self.constraints = parse_member_url(group.member_urls[0])

    def changes(self, candidate: MemberCandidate, is_add: bool) -> list[GeneratedChange]:
        constraints = self.constraints
        if not is_add:
            constraints = [c for c in constraints if c.attribute.lower() != "objectclass"]
        if not constraints:
            return []
        op = ModOp.ADD if is_add else ModOp.DELETE
        soft = TYPE_OR_VALUE_EXISTS if is_add else NO_SUCH_ATTRIBUTE
        return [
            GeneratedChange(
                dn=candidate.dn,
                changetype=ChangeType.MODIFY,
                modifications=[Modification(op, c.attribute, (c.value,))],
                soft_errors=frozenset({soft}),
            )
            for c in constraints
        ]


STRATEGIES: dict[str, type[MembershipStrategy]] = {
    "memberuid": PosixGroupMembership,
    "member": DnGroupMembership,
    "uniquemember": DnGroupMembership,
}


def strategy_for(group: GroupDescriptor) -> MembershipStrategy:
    """
    Pick the strategy for a classified group.

    Raises:
        MembershipRejected: a dynamic group's memberURL is unusable
        UnsupportedGroupType: the group was not classified

    """
    if group.group_type == GroupType.DYNAMIC:
        return DynamicGroupMembership(group)
    if group.member_attribute is None:
        raise UnsupportedGroupType(group.dn, sorted(group.objectclasses))
    return STRATEGIES[group.member_attribute.lower()](group)


# -----------------------
# Resolver
# -----------------------


class MembershipResolver:
    """
    Validate members and classify the group on one server.

    Walks ``Unresolved -> Classified`` (or ``Rejected``); the executor takes
    it to ``Applied`` by running the changes.

    Args:
        target: the server
        group_dn: the group to change

    Keyword Args:
        user_base_dn: where to look for users; the server's base DN if blank

    """

    def __init__(
        self, target: ServerTarget, group_dn: str, user_base_dn: str | None = None
    ) -> None:
        self.target = target
        self.group_dn = group_dn
        self.validator = MemberValidator(target, user_base_dn)
        self.state = MembershipState.UNRESOLVED
        self.strategy: MembershipStrategy | None = None

    def read_group(self) -> GroupDescriptor:
        """
        Read and classify the group.

        Raises:
            NotFoundError: the group entry does not exist

        """
        entry = self.target.client.read_entry(self.group_dn)
        if entry is None:
            raise NotFoundError(self.group_dn, f"Group not found: {self.group_dn}")
        return classify(entry)

    def resolve(
        self, user_ids: list[str], continue_on_error: bool = False
    ) -> tuple[list[Subject], list[Subject]]:
        """
        Validate ``user_ids`` and pick the group's strategy.

        Returns:
            ``(candidates, failures)`` as from :py:meth:`MemberValidator.validate`.
            Each candidate subject's payload becomes a
            ``(strategy, MemberCandidate)`` pair.

        Raises:
            MembershipRejected: no user survived validation, or the group's
                filter cannot be applied; ``failures`` is attached
            NotFoundError: the group does not exist
            UnsupportedGroupType: the group is of no kind we manage

        """
        candidates, failures = self.validator.validate(user_ids, continue_on_error)
        failed = [
            ExecutionResult(
                subject_index=s.index,
                label=s.label,
                success=False,
                error_kind=type(s.error).__name__,
                error_detail=str(s.error),
            )
            for s in failures
        ]
        if not candidates:
            self.state = MembershipState.REJECTED
            msg = "No valid users found"
            raise MembershipRejected(msg, failed)
        try:
            group = self.read_group()
            self.strategy = strategy_for(group)
        except MembershipRejected as e:
            self.state = MembershipState.REJECTED
            e.failures = failed
            raise
        except BulkError:
            self.state = MembershipState.REJECTED
            raise
        self.state = MembershipState.CLASSIFIED
        logger.info(
            "ldapbulk.membership.resolved server=%s group=%s type=%s candidates=%d",
            self.target.name,
            self.group_dn,
            self.strategy.group_type.value,
            len(candidates),
        )
        for subject in candidates:
            subject.payload = (self.strategy, subject.payload)
        return candidates, failures
