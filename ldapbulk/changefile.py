"""
Reading and writing LDIF change files (RFC 2849).

The same grammar is used in both directions: anything :py:func:`format_change`
writes, :py:func:`parse` reads back into an equivalent record.

Supported on input: ``version:`` lines, ``#`` comments, folded lines,
base64 (``::``) values, ``control:`` lines (consumed and ignored), and the
``add``, ``modify``, ``delete``, ``modrdn`` and ``moddn`` change types.
URL (``:<``) values are not supported.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import GeneratedChange

MOD_OPS = ("add", "delete", "replace", "increment")


class ChangeFileError(ValueError):
    """
    The change file text is not valid LDIF.

    Args:
        message: what is wrong
        line: 1-based line number in the input, if known

    """

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"Line {line}: {message}"
        super().__init__(message)


@dataclass
class ChangeRecord:
    """
    One parsed LDIF change record, before any interpretation of its type.

    ``modifications`` holds ``(op, attribute, values)`` tuples in file order.
    """

    dn: str
    changetype: str
    line: int
    attributes: dict[str, list[str]] = field(default_factory=dict)
    modifications: list[tuple[str, str, list[str]]] = field(default_factory=list)
    new_rdn: str | None = None
    delete_old_rdn: bool = True
    new_superior: str | None = None


# ------------------------
# Reading
# ------------------------


def _unfold(text: str) -> list[tuple[int, str]]:
    """
    Join folded lines and drop comments.

    Returns:
        ``(line_number, line)`` pairs; blank lines are kept as ``""`` so that
        record boundaries survive.

    """
    lines: list[tuple[int, str]] = []
    in_comment = False
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.rstrip("\r")
        if not line.strip():
            in_comment = False
            lines.append((number, ""))
            continue
        if line.startswith(" "):
            if in_comment:
                continue
            if lines and lines[-1][1]:
                lines[-1] = (lines[-1][0], lines[-1][1] + line[1:])
                continue
            raise ChangeFileError("continuation line with nothing to continue", number)
        in_comment = line.startswith("#")
        if in_comment:
            continue
        lines.append((number, line))
    return lines


def _split_line(number: int, line: str) -> tuple[str, str]:
    if line == "-":
        return "-", ""
    if ":" not in line:
        raise ChangeFileError(f"expected 'attribute: value', got {line!r}", number)
    key, rest = line.split(":", 1)
    key = key.strip()
    if not key:
        raise ChangeFileError("missing attribute name", number)
    if rest.startswith(":"):
        try:
            value = base64.b64decode(rest[1:].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ChangeFileError(f"bad base64 value for {key}", number) from e
        return key, value
    if rest.startswith("<"):
        raise ChangeFileError(f"URL values are not supported ({key})", number)
    return key, rest.lstrip(" ")


def _blocks(text: str) -> list[list[tuple[int, str, str]]]:
    blocks: list[list[tuple[int, str, str]]] = []
    current: list[tuple[int, str, str]] = []
    for number, line in _unfold(text):
        if not line:
            if current:
                blocks.append(current)
                current = []
            continue
        key, value = _split_line(number, line)
        current.append((number, key, value))
    if current:
        blocks.append(current)
    if blocks and blocks[0][0][1].lower() == "version":
        blocks[0] = blocks[0][1:]
        if not blocks[0]:
            blocks.pop(0)
    return blocks


def _parse_modify(record: ChangeRecord, pairs: list[tuple[int, str, str]]) -> None:
    i = 0
    while i < len(pairs):
        number, op, attribute = pairs[i]
        if op == "-":
            i += 1
            continue
        if op.lower() not in MOD_OPS:
            raise ChangeFileError(f"invalid modify operation {op!r}", number)
        values: list[str] = []
        i += 1
        while i < len(pairs) and pairs[i][1] != "-":
            vnumber, key, value = pairs[i]
            if key.lower() != attribute.lower():
                raise ChangeFileError(
                    f"expected value for {attribute!r} or '-', got {key!r}", vnumber
                )
            values.append(value)
            i += 1
        record.modifications.append((op.lower(), attribute, values))
        i += 1


def _parse_block(pairs: list[tuple[int, str, str]]) -> ChangeRecord:
    number, key, dn = pairs[0]
    if key.lower() != "dn":
        raise ChangeFileError(f"record does not start with 'dn:' ({key!r})", number)
    rest = pairs[1:]
    while rest and rest[0][1].lower() == "control":
        rest = rest[1:]
    if not rest or rest[0][1].lower() != "changetype":
        raise ChangeFileError(f"record for {dn!r} has no changetype", number)
    changetype = rest[0][2].strip().lower()
    rest = rest[1:]
    record = ChangeRecord(dn=dn.strip(), changetype=changetype, line=number)
    if changetype == "add":
        for vnumber, attribute, value in rest:
            if attribute == "-":
                raise ChangeFileError("'-' is only valid in modify records", vnumber)
            existing = next(
                (a for a in record.attributes if a.lower() == attribute.lower()),
                attribute,
            )
            record.attributes.setdefault(existing, []).append(value)
    elif changetype == "modify":
        _parse_modify(record, rest)
    elif changetype in ("modrdn", "moddn"):
        fields = {attribute.lower(): (vnumber, value) for vnumber, attribute, value in rest}
        if "newrdn" not in fields:
            raise ChangeFileError(f"{changetype} record for {dn!r} has no newrdn", number)
        record.new_rdn = fields["newrdn"][1]
        if "deleteoldrdn" in fields:
            vnumber, flag = fields["deleteoldrdn"]
            if flag.strip() not in ("0", "1"):
                raise ChangeFileError("deleteoldrdn must be 0 or 1", vnumber)
            record.delete_old_rdn = flag.strip() == "1"
        if "newsuperior" in fields:
            record.new_superior = fields["newsuperior"][1]
    elif changetype == "delete":
        if rest:
            raise ChangeFileError(
                f"delete record for {dn!r} has unexpected lines", rest[0][0]
            )
    # Unknown change types are passed through; the compiler decides.
    return record


def parse(text: str) -> list[ChangeRecord]:
    """
    Parse LDIF change records from ``text``.

    Raises:
        ChangeFileError: the text is not valid LDIF

    Returns:
        The records in file order.

    """
    return [_parse_block(block) for block in _blocks(text)]


def split_records(text: str) -> list[str]:
    """
    Split ``text`` into the raw text of each record.

    Comment-only blocks and the ``version:`` line are dropped; everything
    else is returned verbatim so it can be parsed or written out again.
    """
    records: list[str] = []
    current: list[str] = []
    for line in text.splitlines():
        if line.strip():
            current.append(line)
            continue
        if current:
            records.append("\n".join(current))
            current = []
    if current:
        records.append("\n".join(current))
    kept: list[str] = []
    for i, record in enumerate(records):
        lines = record.splitlines()
        if i == 0 and lines[0].lower().startswith("version:"):
            lines = lines[1:]
        if all(line.startswith("#") or line.startswith(" ") for line in lines):
            continue
        kept.append("\n".join(lines))
    return kept


def count_records(text: str) -> int:
    """Count ``dn:`` lines in ``text``; used for import previews."""
    return sum(1 for line in text.splitlines() if line.lower().startswith("dn:"))


# ------------------------
# Writing
# ------------------------


def _is_safe(value: str) -> bool:
    """RFC 2849 SAFE-STRING, plus no trailing space."""
    if not value:
        return True
    if value[0] in (" ", ":", "<") or value.endswith(" "):
        return False
    return all(32 <= ord(c) < 127 for c in value)


def format_line(attribute: str, value: str) -> str:
    """Render one ``attribute: value`` line, base64 encoding when needed."""
    if _is_safe(value):
        return f"{attribute}: {value}"
    encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
    return f"{attribute}:: {encoded}"


def format_change(change: "GeneratedChange") -> str:
    """
    Render a :py:class:`~ldapbulk.models.GeneratedChange` as one LDIF record.

    The returned text has no trailing newline; use :py:func:`join_records`
    to assemble a file.
    """
    lines = [format_line("dn", change.dn)]
    changetype = change.changetype.value
    lines.append(f"changetype: {changetype}")
    if changetype == "add":
        for attribute, values in change.attributes.items():
            lines.extend(format_line(attribute, value) for value in values)
    elif changetype == "modify":
        for i, mod in enumerate(change.modifications):
            if i:
                lines.append("-")
            lines.append(f"{mod.op.value}: {mod.attribute}")
            lines.extend(format_line(mod.attribute, value) for value in mod.values)
        if change.modifications:
            lines.append("-")
    elif changetype == "moddn":
        lines.append(format_line("newrdn", change.new_rdn or ""))
        lines.append(f"deleteoldrdn: {1 if change.delete_old_rdn else 0}")
        if change.new_superior:
            lines.append(format_line("newsuperior", change.new_superior))
    return "\n".join(lines)


def join_records(texts: list[str]) -> str:
    """Concatenate record texts with one blank line between records."""
    stripped = [text.strip("\n") for text in texts if text.strip()]
    if not stripped:
        return ""
    return "\n\n".join(stripped) + "\n"


def section(server_name: str, texts: list[str]) -> str:
    """One server's part of a generated change file."""
    header = f"# Server: {server_name}\n# Entries: {len(texts)}\n\n"
    return header + join_records(texts)
