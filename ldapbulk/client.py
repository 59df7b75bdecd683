"""
A directory client over python-ldap.

The bulk engine only talks to the directory through :py:class:`DirectoryClient`.
It converts between the engine's string-valued data model and python-ldap's
bytes, attaches request controls, and turns ``ldap.LDAPError`` into
:py:class:`~ldapbulk.exceptions.ProtocolError`.
"""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import ldap
import ldap.schema
from ldap.controls import LDAPControl

from .exceptions import ProtocolError
from .models import Modification, ModOp
from .typing import AddModlist, AttributeMap, LDAPData, ModifyModList

logger = logging.getLogger(__name__)

PERMISSIVE_MODIFY_OID = "1.2.840.113556.1.4.1413"
NO_OPERATION_OID = "1.3.6.1.4.1.4203.1.10.2"

#: result code returned by servers that honor the no-operation control
X_NO_OPERATION = 0x410E
NO_SUCH_OBJECT = 32

MOD_OPS: dict[ModOp, int] = {
    ModOp.ADD: ldap.MOD_ADD,  # type: ignore[attr-defined]
    ModOp.DELETE: ldap.MOD_DELETE,  # type: ignore[attr-defined]
    ModOp.REPLACE: ldap.MOD_REPLACE,  # type: ignore[attr-defined]
    ModOp.INCREMENT: ldap.MOD_INCREMENT,  # type: ignore[attr-defined]
}


# -----------------------
# LDAP Controls
# -----------------------


class PermissiveModifyControl(LDAPControl):
    """
    LDAP Permissive Modify request control.

    Asks the server not to fail a modify that adds a value already present or
    deletes a value that is absent.  Active Directory, OpenLDAP and 389 DS
    all implement it.  The control carries no value.
    """

    control_type = PERMISSIVE_MODIFY_OID

    def __init__(self, criticality: bool = True) -> None:
        super().__init__(self.control_type, criticality, None)


class NoOperationControl(LDAPControl):
    """
    LDAP No-Op request control.

    The server processes the request as usual but does not apply it.  The
    control carries no value.
    """

    control_type = NO_OPERATION_OID

    def __init__(self, criticality: bool = True) -> None:
        super().__init__(self.control_type, criticality, None)


CONTROL_CLASSES: dict[str, type[LDAPControl]] = {
    PERMISSIVE_MODIFY_OID: PermissiveModifyControl,
    NO_OPERATION_OID: NoOperationControl,
}


# -----------------------
# Entries
# -----------------------


class DirectoryEntry:
    """
    A directory entry with case-insensitive attribute lookup.

    Args:
        dn: the entry's distinguished name
        attributes: attribute name -> list of values

    """

    def __init__(self, dn: str, attributes: AttributeMap | None = None) -> None:
        self.dn = dn
        self.attributes: AttributeMap = attributes or {}
        self._lookup = {name.lower(): name for name in self.attributes}

    @classmethod
    def from_ldap(cls, data: LDAPData) -> "DirectoryEntry":
        dn, attrs = data
        return cls(
            dn,
            {
                name: [v.decode("utf-8", errors="replace") for v in values]
                for name, values in attrs.items()
            },
        )

    def values(self, name: str) -> list[str]:
        """Return every value of attribute ``name``, or ``[]``."""
        real = self._lookup.get(name.lower())
        if real is None:
            return []
        return self.attributes[real]

    def first(self, name: str) -> str | None:
        """Return the first value of attribute ``name``, or ``None``."""
        values = self.values(name)
        return values[0] if values else None

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._lookup

    def __repr__(self) -> str:
        return f"<DirectoryEntry dn={self.dn!r}>"


# -----------------------
# The client
# -----------------------


def _encode(values: Iterable[str]) -> list[bytes]:
    return [value.encode("utf-8") for value in values]


def connect(config: dict[str, Any]) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]  # noqa: PLR0912
    """
    Create and return a new bound LDAP connection object.

    Args:
        config: one ``read`` or ``write`` block from ``settings.LDAP_SERVERS``

    Raises:
        ValueError: If the ``tls_verify`` value in the configuration is invalid.
        OSError: If a configured CA certificate, certificate or key file does
            not exist or is not a file.

    Returns:
        A connected LDAPObject.

    """
    ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
    if config.get("follow_referrals", False):
        ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
    else:
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
    timeout = config.get("timeout", 15.0)
    ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
    sizelimit = config.get("sizelimit", None)
    if sizelimit:
        ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
    tls_verify = config.get("tls_verify", "never")
    if tls_verify == "never":
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
    elif tls_verify == "always":
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
    else:
        msg = f"Invalid tls_verify value: {tls_verify}"
        raise ValueError(msg)
    for setting, option, label in (
        ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE, "CA Certificate"),  # type: ignore[attr-defined]
        ("tls_certfile", ldap.OPT_X_TLS_CERTFILE, "TLS Certificate"),  # type: ignore[attr-defined]
        ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE, "TLS Key"),  # type: ignore[attr-defined]
    ):
        if filename := config.get(setting, None):
            path = Path(filename)
            if not path.exists():
                msg = f"{label} file does not exist: {filename}"
                raise OSError(msg)
            if not path.is_file():
                msg = f"{label} file is not a file: {filename}"
                raise OSError(msg)
            ldap_object.set_option(option, filename)
    ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
    if config.get("use_starttls", True):
        ldap_object.start_tls_s()
    ldap_object.simple_bind_s(config["user"], config["password"])
    return ldap_object


class DirectoryClient:
    """
    The directory operations the bulk engine needs, over one connection.

    The connection is owned by whoever created it; this class never unbinds
    it.

    Args:
        connection: a bound python-ldap ``LDAPObject``

    Keyword Args:
        name: the server's name, for logging

    """

    def __init__(self, connection: Any, name: str = "default") -> None:
        self.connection = connection
        self.name = name

    @classmethod
    def from_config(cls, config: dict[str, Any], name: str = "default") -> "DirectoryClient":
        return cls(connect(config), name=name)

    def _controls(self, oids: Iterable[str] | None) -> list[LDAPControl] | None:
        if not oids:
            return None
        controls: list[LDAPControl] = []
        for oid in oids:
            if oid in CONTROL_CLASSES:
                controls.append(CONTROL_CLASSES[oid]())
            else:
                controls.append(LDAPControl(oid, True, None))
        return controls

    def _call(self, dn: str | None, func: Any, *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR):  # type: ignore[attr-defined]
            # Connection failures are fatal for the whole server, not the subject
            raise
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            error = ProtocolError.from_ldap_error(e, dn=dn)
            if error.result_code == X_NO_OPERATION:
                logger.debug("ldapbulk.client.noop server=%s dn=%s", self.name, dn)
                return None
            raise error from e

    def search(
        self,
        basedn: str,
        filterstr: str,
        attributes: list[str] | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> list[DirectoryEntry]:
        """
        Search for entries.

        Args:
            basedn: The base DN to search from.
            filterstr: The LDAP search filter string.

        Keyword Args:
            attributes: List of attributes to retrieve; ``None`` for all.
            scope: LDAP search scope.

        Returns:
            The matching entries.  Referrals are dropped.

        """
        data = self._call(
            basedn,
            self.connection.search_s,
            basedn,
            scope,
            filterstr=filterstr,
            attrlist=attributes,
        )
        # We have to filter out any references that AD puts in
        entries = [
            DirectoryEntry.from_ldap(obj) for obj in data or [] if isinstance(obj[1], dict)
        ]
        logger.debug(
            "ldapbulk.client.search server=%s basedn=%s filter=%s count=%d",
            self.name,
            basedn,
            filterstr,
            len(entries),
        )
        return entries

    def read_entry(self, dn: str) -> DirectoryEntry | None:
        """
        Read one entry by DN.

        Returns:
            The entry, or ``None`` if it does not exist.

        """
        try:
            entries = self.search(dn, "(objectClass=*)", scope=ldap.SCOPE_BASE)  # type: ignore[attr-defined]
        except ProtocolError as e:
            if e.result_code == NO_SUCH_OBJECT:
                return None
            raise
        return entries[0] if entries else None

    def add(
        self,
        dn: str,
        attributes: AttributeMap,
        controls: Iterable[str] | None = None,
    ) -> None:
        modlist: AddModlist = [(name, _encode(values)) for name, values in attributes.items()]
        self._call(dn, self.connection.add_ext_s, dn, modlist, serverctrls=self._controls(controls))
        logger.info("ldapbulk.client.add server=%s dn=%s", self.name, dn)

    def modify(
        self,
        dn: str,
        modifications: list[Modification],
        controls: Iterable[str] | None = None,
    ) -> None:
        modlist: ModifyModList = [
            (MOD_OPS[mod.op], mod.attribute, _encode(mod.values) or None)
            for mod in modifications
        ]
        self._call(
            dn, self.connection.modify_ext_s, dn, modlist, serverctrls=self._controls(controls)
        )
        logger.info(
            "ldapbulk.client.modify server=%s dn=%s modifications=%d",
            self.name,
            dn,
            len(modifications),
        )

    def delete(self, dn: str, controls: Iterable[str] | None = None) -> None:
        self._call(dn, self.connection.delete_ext_s, dn, serverctrls=self._controls(controls))
        logger.info("ldapbulk.client.delete server=%s dn=%s", self.name, dn)

    def rename(
        self,
        dn: str,
        new_rdn: str,
        new_superior: str | None = None,
        delete_old_rdn: bool = True,
        controls: Iterable[str] | None = None,
    ) -> None:
        self._call(
            dn,
            self.connection.rename_s,
            dn,
            new_rdn,
            newsuperior=new_superior,
            delold=1 if delete_old_rdn else 0,
            serverctrls=self._controls(controls),
        )
        logger.info("ldapbulk.client.rename server=%s dn=%s newrdn=%s", self.name, dn, new_rdn)

    def root_dse(self) -> DirectoryEntry:
        """Read the Root DSE attributes the engine cares about."""
        data = self._call(
            "",
            self.connection.search_s,
            "",  # Root DSE
            ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            "(objectClass=*)",
            ["namingContexts", "supportedControl", "vendorName", "subschemaSubentry"],
        )
        if not data:
            return DirectoryEntry("")
        return DirectoryEntry.from_ldap(data[0])

    def naming_contexts(self) -> list[str]:
        return self.root_dse().values("namingContexts")

    def supports_control(self, oid: str) -> bool:
        """
        Check whether the server advertises request control ``oid``.

        This always asks the server; callers cache the answer.
        """
        return oid in self.root_dse().values("supportedControl")

    def schema(self) -> ldap.schema.SubSchema:  # type: ignore[name-defined]
        """Retrieve the server's schema from its subschema subentry."""
        subschema_dn = self._call("", self.connection.search_subschemasubentry_s)
        if not subschema_dn:
            msg = "server does not advertise a subschema subentry"
            raise ProtocolError(None, msg)
        entry = self._call(
            subschema_dn, self.connection.read_subschemasubentry_s, subschema_dn
        )
        return ldap.schema.SubSchema(entry)
