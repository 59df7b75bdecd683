"""
Bulk jobs: an entry source paired with a way to turn each subject into
changes.

* :py:class:`TemplateJob`: count-based generation, search-result bulk edit
  and CSV import, depending on the source
* :py:class:`LdifImportJob`: apply a user-supplied LDIF change file
* :py:class:`MembershipJob`: add users to, or remove them from, a group
"""

import logging
from collections.abc import Iterator
from itertools import islice
from typing import TYPE_CHECKING

from .activity import Category
from .compiler import ChangeCompiler
from .conf import get_setting
from .exceptions import ValidationError
from .membership import MembershipState, parse_user_ids
from .models import GeneratedChange, ServerSummary, ServerTarget, Subject
from .sources import (
    CsvSource,
    EntrySource,
    LdifSource,
    MembershipSource,
    RangeSource,
    SearchResultSource,
)
from .templates import has_dn_line, render

if TYPE_CHECKING:
    from .executor import RunOptions

logger = logging.getLogger(__name__)


class BulkJob:
    """
    Base class for bulk jobs.

    Args:
        source: where the subjects come from
        category: activity log category for this job's entries
        file_name: default name of the generated change file

    """

    def __init__(self, source: EntrySource, category: Category, file_name: str) -> None:
        self.source = source
        self.category = category
        self.file_name = file_name
        self.compiler = ChangeCompiler()

    def validate(self) -> None:
        """
        Check the job's static inputs before any server is touched.

        Raises:
            ValidationError: an input is missing or malformed

        """
        self.source.validate()

    def subjects(self, target: ServerTarget, options: "RunOptions") -> Iterator[Subject]:  # noqa: ARG002
        return self.source.produce(target)

    def size(self, target: ServerTarget) -> int | None:
        return self.source.size(target)

    def compile(
        self, subject: Subject, target: ServerTarget, options: "RunOptions"
    ) -> list[GeneratedChange]:
        raise NotImplementedError

    def render(self, subject: Subject) -> str:
        """The LDIF text for ``subject``, as shown in previews."""
        raise NotImplementedError

    def finish(self, target: ServerTarget, summary: ServerSummary) -> None:
        """Called after all subjects on ``target`` have been processed."""

    def describe(self) -> str:
        return f"{type(self).__name__}({self.source.name})"


class TemplateJob(BulkJob):
    """
    Expand an LDIF template once per subject.

    The category and file name default by source: a range source is bulk
    generation (``bulk-generate.ldif``), a search source is a bulk operation
    on search results (``bulk-operation.ldif``) and a CSV source is an import
    (``csv-import.ldif``).

    Args:
        source: where the subjects come from
        template: LDIF text with ``{NAME}`` placeholders

    Keyword Args:
        category: override the activity log category
        file_name: override the change file name

    """

    DEFAULTS: dict[type[EntrySource], tuple[Category, str]] = {
        RangeSource: (Category.BULK_GENERATE, "bulk-generate.ldif"),
        SearchResultSource: (Category.BULK_SEARCH, "bulk-operation.ldif"),
        CsvSource: (Category.IMPORT, "csv-import.ldif"),
    }

    def __init__(
        self,
        source: EntrySource,
        template: str,
        category: Category | None = None,
        file_name: str | None = None,
    ) -> None:
        default_category, default_file_name = self.DEFAULTS.get(
            type(source), (Category.BULK_GENERATE, "bulk-operation.ldif")
        )
        super().__init__(source, category or default_category, file_name or default_file_name)
        self.template = template

    def validate(self) -> None:
        if not (self.template or "").strip():
            msg = "Template is required"
            raise ValidationError(msg)
        if "changetype:" not in self.template.lower() and not has_dn_line(self.template):
            msg = "Template must contain a 'dn:' line or a 'changetype:' line"
            raise ValidationError(msg)
        super().validate()

    def render(self, subject: Subject, strict: bool = False) -> str:
        return render(self.template, subject.bindings, subject.attributes, strict=strict)

    def compile(
        self, subject: Subject, target: ServerTarget, options: "RunOptions"  # noqa: ARG002
    ) -> list[GeneratedChange]:
        text = self.render(subject, strict=options.strict_placeholders)
        return self.compiler.compile(text, subject.index)


class LdifImportJob(BulkJob):
    """
    Apply a user-supplied LDIF change file, one record per subject.

    Args:
        text: the change file

    """

    def __init__(self, text: str) -> None:
        super().__init__(LdifSource(text), Category.IMPORT, "ldif-import.ldif")

    def render(self, subject: Subject) -> str:
        return subject.payload

    def compile(
        self, subject: Subject, target: ServerTarget, options: "RunOptions"  # noqa: ARG002
    ) -> list[GeneratedChange]:
        return self.compiler.compile(subject.payload, subject.index)


class MembershipJob(BulkJob):
    """
    Add users to, or remove users from, a group.

    Args:
        group_dn: the group
        user_ids: user ids, as a list or as text with one id per line
            (blank lines and ``#`` comments are skipped)

    Keyword Args:
        operation: ``"add"`` or ``"remove"``
        user_base_dn: where to look for users; the server's base DN if blank

    """

    OPERATIONS = ("add", "remove")

    def __init__(
        self,
        group_dn: str,
        user_ids: list[str] | str,
        operation: str = "add",
        user_base_dn: str | None = None,
    ) -> None:
        if isinstance(user_ids, str):
            user_ids = parse_user_ids(user_ids)
        super().__init__(
            MembershipSource(group_dn, user_ids, user_base_dn),
            Category.BULK_GROUP_MEMBERSHIPS,
            "group-memberships.ldif",
        )
        self.operation = operation

    @property
    def is_add(self) -> bool:
        return self.operation == "add"

    def validate(self) -> None:
        if self.operation not in self.OPERATIONS:
            msg = f"Operation must be one of {', '.join(self.OPERATIONS)}, got {self.operation!r}"
            raise ValidationError(msg)
        super().validate()

    def subjects(self, target: ServerTarget, options: "RunOptions") -> Iterator[Subject]:
        assert isinstance(self.source, MembershipSource)  # noqa: S101
        return self.source.produce(target, continue_on_error=options.continue_on_error)

    def compile(
        self, subject: Subject, target: ServerTarget, options: "RunOptions"  # noqa: ARG002
    ) -> list[GeneratedChange]:
        strategy, candidate = subject.payload
        changes = strategy.changes(candidate, self.is_add)
        for change in changes:
            change.subject_index = subject.index
        return changes

    def finish(self, target: ServerTarget, summary: ServerSummary) -> None:  # noqa: ARG002
        assert isinstance(self.source, MembershipSource)  # noqa: S101
        resolver = self.source.resolvers.get(target.name)
        if resolver is not None and resolver.state == MembershipState.CLASSIFIED:
            resolver.state = MembershipState.APPLIED

    def describe(self) -> str:
        return f"MembershipJob({self.operation} {self.source.group_dn})"  # type: ignore[attr-defined]


def preview(job: BulkJob, count: int | None = None) -> str:
    """
    Render the first ``count`` subjects of ``job`` without touching a server.

    Only jobs whose source can be produced offline can be previewed: ranges,
    LDIF files, and CSV files whose DNs come from a column.

    Keyword Args:
        count: how many subjects to show; defaults to ``LDAPBULK_PREVIEW_COUNT``

    Raises:
        ValidationError: the job's inputs are invalid, or its source needs a
            server

    Returns:
        The rendered subjects, followed by ``... and N more entries`` when
        some were left out.

    """
    job.validate()
    source = job.source
    offline = isinstance(source, (RangeSource, LdifSource)) or (
        isinstance(source, CsvSource) and source.dn_method == "column"
    )
    if not offline:
        msg = f"A {source.name} job cannot be previewed without a server"
        raise ValidationError(msg)
    if count is None:
        count = get_setting("PREVIEW_COUNT")
    # Offline sources never look at the target
    subjects = list(islice(source.produce(None), count))  # type: ignore[arg-type]
    parts: list[str] = []
    for subject in subjects:
        if subject.error is not None:
            parts.append(f"# {subject.label}: {subject.error}")
        else:
            parts.append(job.render(subject).strip("\n"))
    total = source.size(None)  # type: ignore[arg-type]
    if total is not None and total > len(subjects):
        parts.append(f"... and {total - len(subjects)} more entries")
    return "\n\n".join(parts)
