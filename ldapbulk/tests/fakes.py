"""
An in-memory stand-in for :py:class:`ldapbulk.client.DirectoryClient`.
"""

from ldap_filter import Filter

from ldapbulk.client import NO_OPERATION_OID, PERMISSIVE_MODIFY_OID, DirectoryEntry
from ldapbulk.exceptions import ProtocolError
from ldapbulk.membership import SIMPLE_ITEM_RE
from ldapbulk.models import ModOp, ServerTarget


class _AnyCase(dict):
    def get_all(self, key):
        try:
            return self[key]
        except KeyError:
            return []

    def __getitem__(self, key):
        for name, values in self.items():
            if name.lower() == key.lower():
                return values
        raise KeyError(key)


def _matches(node, attributes, raw_values):
    if node.type == "group":
        results = [_matches(child, attributes, raw_values) for child in node.filters]
        if node.comp == "&":
            return all(results)
        if node.comp == "|":
            return any(results)
        return not results[0]
    raw_value = next(raw_values, "*")
    if node.comp == "=" and "*" not in raw_value:
        # escaped asterisks are literal
        wanted = node.val.lower()
        return any(v.lower() == wanted for v in attributes.get_all(node.attr))
    return node.match(attributes)


class FakeClient:
    """
    Just enough of a directory to exercise the engine.

    ``calls`` records every mutation as ``(operation, dn, payload, controls)``.
    Put a :py:class:`ProtocolError` in ``failures`` under a lowercased DN to
    make every mutation of that DN fail.
    """

    def __init__(self, name="fake", controls=()):
        self.name = name
        self.entries: dict[str, DirectoryEntry] = {}
        self.controls = set(controls)
        self.control_queries: list[str] = []
        self.calls: list[tuple] = []
        self.searches: list[tuple[str, str]] = []
        self.failures: dict[str, ProtocolError] = {}

    def load(self, dn, **attributes):
        self.entries[dn.lower()] = DirectoryEntry(
            dn, {name: list(values) for name, values in attributes.items()}
        )

    def get(self, dn):
        return self.entries.get(dn.lower())

    # -----------------------
    # DirectoryClient interface
    # -----------------------

    def search(self, basedn, filterstr, attributes=None, scope=2):
        self.searches.append((basedn, filterstr))
        tree = Filter.parse(filterstr)
        base = basedn.lower()
        found = []
        for dn, entry in self.entries.items():
            if scope == 0:
                if dn != base:
                    continue
            elif not (dn == base or dn.endswith("," + base)):
                continue
            raw_values = (m.group(1) for m in SIMPLE_ITEM_RE.finditer(filterstr))
            if _matches(tree, _AnyCase(entry.attributes), raw_values):
                found.append(entry)
        return found

    def read_entry(self, dn):
        return self.get(dn)

    def _check(self, dn):
        if dn.lower() in self.failures:
            raise self.failures[dn.lower()]

    def add(self, dn, attributes, controls=None):
        self._check(dn)
        self.calls.append(("add", dn, attributes, controls))
        if controls and NO_OPERATION_OID in controls:
            return
        if dn.lower() in self.entries:
            raise ProtocolError(68, "Already exists", dn=dn)
        self.entries[dn.lower()] = DirectoryEntry(dn, {k: list(v) for k, v in attributes.items()})

    def modify(self, dn, modifications, controls=None):
        self._check(dn)
        self.calls.append(("modify", dn, modifications, controls))
        entry = self.get(dn)
        if entry is None:
            raise ProtocolError(32, "No such object", dn=dn)
        if controls and NO_OPERATION_OID in controls:
            return
        permissive = bool(controls) and PERMISSIVE_MODIFY_OID in controls
        for mod in modifications:
            real = entry._lookup.get(mod.attribute.lower(), mod.attribute)
            entry._lookup[mod.attribute.lower()] = real
            current = entry.attributes.setdefault(real, [])
            if mod.op == ModOp.ADD:
                for value in mod.values:
                    if value in current:
                        if permissive:
                            continue
                        raise ProtocolError(20, "Type or value exists", dn=dn)
                    current.append(value)
            elif mod.op == ModOp.DELETE:
                if not current and not permissive:
                    raise ProtocolError(16, "No such attribute", dn=dn)
                for value in mod.values or list(current):
                    if value not in current:
                        if permissive:
                            continue
                        raise ProtocolError(16, "No such attribute", dn=dn)
                    current.remove(value)
            elif mod.op == ModOp.REPLACE:
                current[:] = list(mod.values)

    def delete(self, dn, controls=None):
        self._check(dn)
        self.calls.append(("delete", dn, None, controls))
        if controls and NO_OPERATION_OID in controls:
            return
        if self.entries.pop(dn.lower(), None) is None:
            raise ProtocolError(32, "No such object", dn=dn)

    def rename(self, dn, new_rdn, new_superior=None, delete_old_rdn=True, controls=None):
        self._check(dn)
        self.calls.append(("moddn", dn, (new_rdn, new_superior, delete_old_rdn), controls))

    def naming_contexts(self):
        return ["dc=example,dc=com"]

    def supports_control(self, oid):
        self.control_queries.append(oid)
        return oid in self.controls


def make_target(name="ldap1", basedn="dc=example,dc=com", controls=()):
    client = FakeClient(name, controls=controls)
    return ServerTarget(name=name, basedn=basedn, client=client), client


def load_directory(client):
    """A small directory: three users and one group of each kind."""
    client.load(
        "uid=jdoe,ou=people,dc=example,dc=com",
        objectClass=["top", "inetOrgPerson"],
        uid=["jdoe"],
        cn=["John Doe"],
        mail=["jdoe@example.com"],
    )
    client.load(
        "uid=asmith,ou=people,dc=example,dc=com",
        objectClass=["top", "posixAccount"],
        uid=["asmith"],
        cn=["Alice Smith"],
    )
    client.load(
        "uid=bjones,ou=people,dc=example,dc=com",
        objectClass=["top", "inetOrgPerson"],
        uid=["bjones"],
        cn=["Bob Jones"],
        departmentNumber=["eng"],
    )
    client.load(
        "cn=posix,ou=groups,dc=example,dc=com",
        objectClass=["top", "posixGroup"],
        cn=["posix"],
        memberUid=[],
    )
    client.load(
        "cn=names,ou=groups,dc=example,dc=com",
        objectClass=["top", "groupOfNames"],
        cn=["names"],
        member=["cn=placeholder"],
    )
    client.load(
        "cn=unique,ou=groups,dc=example,dc=com",
        objectClass=["top", "groupOfUniqueNames"],
        cn=["unique"],
        uniqueMember=[],
    )
    client.load(
        "cn=engineers,ou=groups,dc=example,dc=com",
        objectClass=["top", "groupOfURLs"],
        cn=["engineers"],
        memberURL=["ldap:///ou=people,dc=example,dc=com??sub?(&(departmentNumber=eng)(employeeType=staff))"],
    )
