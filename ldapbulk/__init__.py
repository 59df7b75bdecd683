"""
Bulk LDAP directory mutations driven by LDIF templates.
"""

__version__ = "1.0.0"
