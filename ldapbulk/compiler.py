"""
Turning expanded template text into :py:class:`~ldapbulk.models.GeneratedChange`
objects.
"""

import logging

from .changefile import ChangeFileError, ChangeRecord, parse
from .exceptions import TemplateError
from .models import ChangeType, GeneratedChange, Modification, ModOp

logger = logging.getLogger(__name__)

CHANGETYPES: dict[str, ChangeType] = {
    "add": ChangeType.ADD,
    "modify": ChangeType.MODIFY,
    "delete": ChangeType.DELETE,
    "modrdn": ChangeType.MODDN,
    "moddn": ChangeType.MODDN,
}


class ChangeCompiler:
    """
    Compile LDIF text into change objects.

    One expansion may produce several changes: a template with more than one
    ``dn:`` block compiles to one change per block, all tagged with the same
    subject index.
    """

    def _translate(self, record: ChangeRecord, subject_index: int) -> GeneratedChange:
        try:
            changetype = CHANGETYPES[record.changetype]
        except KeyError as e:
            msg = (
                f"Unsupported change type {record.changetype!r} for {record.dn!r} "
                f"(line {record.line})"
            )
            raise TemplateError(msg) from e
        change = GeneratedChange(
            dn=record.dn, changetype=changetype, subject_index=subject_index
        )
        if changetype == ChangeType.ADD:
            if not record.attributes:
                msg = f"add record for {record.dn!r} has no attributes"
                raise TemplateError(msg)
            change.attributes = record.attributes
        elif changetype == ChangeType.MODIFY:
            if not record.modifications:
                msg = f"modify record for {record.dn!r} has no modifications"
                raise TemplateError(msg)
            change.modifications = [
                Modification(ModOp(op), attribute, tuple(values))
                for op, attribute, values in record.modifications
            ]
        elif changetype == ChangeType.MODDN:
            change.new_rdn = record.new_rdn
            change.delete_old_rdn = record.delete_old_rdn
            change.new_superior = record.new_superior
        return change

    def compile(self, text: str, subject_index: int = 0) -> list[GeneratedChange]:
        """
        Compile ``text`` into changes.

        Args:
            text: expanded LDIF text for one subject

        Keyword Args:
            subject_index: recorded on every change produced

        Raises:
            TemplateError: the text is not valid LDIF, contains no records,
                or uses a change type we cannot apply

        Returns:
            The changes, in the order they appear in ``text``.

        """
        try:
            records = parse(text)
        except ChangeFileError as e:
            raise TemplateError(str(e)) from e
        if not records:
            msg = "Template expanded to no change records"
            raise TemplateError(msg)
        changes = [self._translate(record, subject_index) for record in records]
        logger.debug(
            "ldapbulk.compiler.compiled subject=%d changes=%d", subject_index, len(changes)
        )
        return changes
