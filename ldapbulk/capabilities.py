"""
Protocol control negotiation.

This module provides the ServerCapabilities class, which answers "does this
server support this request control?" once per server and OID for the
lifetime of one bulk run.
"""

import logging
import threading
from typing import Any

from .client import NO_OPERATION_OID, PERMISSIVE_MODIFY_OID
from .exceptions import ProtocolError, UnsupportedControl
from .models import ServerTarget

logger = logging.getLogger(__name__)

FEATURE_NAMES: dict[str, str] = {
    PERMISSIVE_MODIFY_OID: "Permissive Modify",
    NO_OPERATION_OID: "No-Op",
}


class ServerCapabilities:
    """
    Per-run cache of control support answers.

    Create one per bulk run and throw it away afterwards.  Answers are never
    re-queried during the run, even if the server's configuration changes
    underneath us.
    """

    def __init__(self) -> None:
        #: (server name, oid) -> supported
        self._cache: dict[tuple[str, str], bool] = {}
        #: (server name, feature name) pairs we have already logged
        self._logged: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _log_capability_detection(self, server: str, feature_name: str, supported: bool) -> None:
        """Log capability detection once per feature per server."""
        with self._lock:
            if (server, feature_name) in self._logged:
                return
            self._logged.add((server, feature_name))
        if supported:
            logger.info(
                "ldapbulk.capabilities.supported server=%s feature=%s", server, feature_name
            )
        else:
            logger.warning(
                "ldapbulk.capabilities.unsupported server=%s feature=%s", server, feature_name
            )

    def supports(self, target: ServerTarget, oid: str) -> bool:
        """
        Check if ``target`` advertises request control ``oid``.

        Args:
            target: the server to ask
            oid: Control OID to check

        Returns:
            True if control is supported, False otherwise

        Raises:
            ldap.SERVER_DOWN, ldap.CONNECT_ERROR: Propagated up

        """
        key = (target.name, oid)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        try:
            supported = bool(target.client.supports_control(oid))
        except ProtocolError as e:
            logger.warning(
                "ldapbulk.capabilities.query.failed server=%s oid=%s error=%s",
                target.name,
                oid,
                e,
            )
            supported = False
        with self._lock:
            # Another thread may have answered first; keep the first answer
            supported = self._cache.setdefault(key, supported)
        self._log_capability_detection(
            target.name, FEATURE_NAMES.get(oid, oid), supported
        )
        return supported

    def require(self, target: ServerTarget, oid: str, feature_name: str | None = None) -> None:
        """
        Make sure ``target`` supports ``oid``.

        Raises:
            UnsupportedControl: the server does not advertise the control

        """
        if not self.supports(target, oid):
            raise UnsupportedControl(target.name, oid, feature_name or FEATURE_NAMES.get(oid, oid))

    def get_cache_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._cache),
                "servers": sorted({name for name, _ in self._cache}),
            }
