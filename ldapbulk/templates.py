"""
Template expansion.

A template is LDIF text with ``{NAME}`` placeholders.  ``{DN}`` and
``{COUNT}`` are reserved; CSV columns are ``{C1}`` .. ``{Cn}``; anything else
is looked up as an attribute of the subject's entry, ignoring case.  For a
multivalued attribute only the first value is substituted.

Placeholders that match nothing are left in place.  Whether that is an error
is up to the caller; see :py:func:`unresolved_placeholders`.
"""

import re
from collections.abc import Mapping

from .exceptions import TemplateError

#: a ``{NAME}`` token.  Attribute names may carry options (``cn;lang-en``)
PLACEHOLDER_RE = re.compile(r"\{([A-Za-z][A-Za-z0-9_.;-]*)\}")
DN_LINE_RE = re.compile(r"^dn::?", re.IGNORECASE)


def placeholder(name: str) -> str:
    """Return the placeholder token for an attribute name: ``mail`` -> ``{MAIL}``."""
    return "{" + name.upper() + "}"


def attribute_bindings(attributes: Mapping[str, list[str]]) -> dict[str, str]:
    """
    Reduce an entry's attributes to a case-insensitive binding map.

    Keys are the lowercased attribute names; only the first value of each
    attribute is kept, and attributes with no values are dropped.
    """
    return {name.lower(): values[0] for name, values in attributes.items() if values}


def expand(
    template: str,
    bindings: Mapping[str, str],
    attributes: Mapping[str, list[str]] | None = None,
) -> str:
    """
    Replace every bound placeholder in ``template``.

    Exact names in ``bindings`` win over attribute names, so ``{DN}`` always
    means the subject's DN even if the entry has an attribute called ``dn``.
    Substitution is a single pass over the template: values that themselves
    look like placeholders are not expanded again.

    Args:
        template: the template text
        bindings: exact-name bindings (``DN``, ``COUNT``, ``C1``, ...)

    Keyword Args:
        attributes: the subject's entry attributes, matched case-insensitively

    Returns:
        The expanded text.

    """
    by_attribute = attribute_bindings(attributes) if attributes else {}

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name in bindings:
            value = bindings[name]
            return "" if value is None else str(value)
        lowered = name.lower()
        if lowered in by_attribute:
            return by_attribute[lowered]
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template)


def unresolved_placeholders(text: str) -> list[str]:
    """Return the names of placeholders still present in ``text``, in order."""
    return [m.group(1) for m in PLACEHOLDER_RE.finditer(text)]


def has_dn_line(text: str) -> bool:
    """
    Return ``True`` if the first meaningful line of ``text`` is a ``dn:`` line.

    Blank lines, comments and an LDIF ``version:`` line are skipped.
    """
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.lower().startswith("version:"):
            continue
        return bool(DN_LINE_RE.match(stripped))
    return False


def ensure_dn_line(text: str, dn: str | None) -> str:
    """
    Prefix ``text`` with ``dn: <dn>`` unless it already declares a DN.

    When there is no DN to inject the text is returned unchanged and the
    compiler will reject it.
    """
    if has_dn_line(text) or not dn:
        return text
    return f"dn: {dn}\n{text}"


def render(
    template: str,
    bindings: Mapping[str, str],
    attributes: Mapping[str, list[str]] | None = None,
    strict: bool = False,
) -> str:
    """
    Expand ``template`` for one subject and make sure it names a DN.

    Args:
        template: the template text
        bindings: exact-name bindings for the subject

    Keyword Args:
        attributes: the subject's entry attributes
        strict: if ``True``, leftover placeholders are an error

    Raises:
        TemplateError: ``strict`` is set and placeholders remain

    Returns:
        The expanded LDIF text for the subject.

    """
    text = expand(template, bindings, attributes)
    if strict:
        leftover = unresolved_placeholders(text)
        if leftover:
            names = ", ".join(sorted(set(leftover)))
            msg = f"Unresolved placeholders in template: {names}"
            raise TemplateError(msg)
    return ensure_dn_line(text, bindings.get("DN"))
