"""
Settings access for django-ldapbulk.

All engine settings live in Django settings under the ``LDAPBULK_`` prefix;
server connection blocks live in ``LDAP_SERVERS``.
"""

from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

DEFAULTS: dict[str, Any] = {
    "CONTINUE_ON_ERROR": False,
    "STRICT_PLACEHOLDERS": False,
    "ACTIVITY_LOG_MAX_ENTRIES": 500,
    "ACTIVITY_LOG_FILE": None,
    "PREVIEW_COUNT": 3,
}


def get_setting(setting_name: str, default_value: Any = None) -> Any:
    """
    Get configuration value from Django settings with fallback.

    Args:
        setting_name: Name of the setting (without LDAPBULK_ prefix)
        default_value: Default value if setting not found; when ``None`` the
            value from :py:data:`DEFAULTS` is used

    Returns:
        Configuration value from settings or default

    """
    if default_value is None:
        default_value = DEFAULTS.get(setting_name)
    return getattr(settings, f"LDAPBULK_{setting_name}", default_value)


def get_server_config(name: str) -> dict[str, Any]:
    """
    Return the ``LDAP_SERVERS`` block for server ``name``.

    Raises:
        ImproperlyConfigured: ``LDAP_SERVERS`` is missing or has no such server

    """
    servers = getattr(settings, "LDAP_SERVERS", None)
    if not servers:
        msg = "settings.LDAP_SERVERS is not defined or is empty"
        raise ImproperlyConfigured(msg)
    try:
        return servers[name]
    except KeyError as e:
        msg = f"settings.LDAP_SERVERS has no server named '{name}'"
        raise ImproperlyConfigured(msg) from e


def validate_settings() -> None:
    """
    Validate Django settings for consistency.

    Raises:
        ImproperlyConfigured: If settings are invalid

    """
    max_entries = get_setting("ACTIVITY_LOG_MAX_ENTRIES")
    if not isinstance(max_entries, int) or max_entries <= 0:
        msg = f"LDAPBULK_ACTIVITY_LOG_MAX_ENTRIES ({max_entries}) must be positive"
        raise ImproperlyConfigured(msg)

    preview_count = get_setting("PREVIEW_COUNT")
    if not isinstance(preview_count, int) or preview_count <= 0:
        msg = f"LDAPBULK_PREVIEW_COUNT ({preview_count}) must be positive"
        raise ImproperlyConfigured(msg)

    servers = getattr(settings, "LDAP_SERVERS", {}) or {}
    for name, config in servers.items():
        if not isinstance(config, dict):
            msg = f"LDAP_SERVERS['{name}'] must be a dict"
            raise ImproperlyConfigured(msg)
        for key in ("read", "write"):
            if key in config and "url" not in config[key]:
                msg = f"LDAP_SERVERS['{name}']['{key}'] has no 'url'"
                raise ImproperlyConfigured(msg)
