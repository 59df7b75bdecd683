"""
LDAP bulk type definitions.

This module provides type aliases for the LDAP data structures passed between
the engine and python-ldap, using Python 3.10+ type hinting conventions.
"""

from collections.abc import Callable

ModifyModListEntry = tuple[int, str, list[bytes] | None]
ModifyModList = list[ModifyModListEntry]
AddModlist = list[tuple[str, list[bytes]]]
LDAPData = tuple[str, dict[str, list[bytes]]]
AttributeMap = dict[str, list[str]]
Dispatcher = Callable[[Callable[[], None]], None]
