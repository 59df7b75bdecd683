import django
from django.conf import settings

# Configure Django settings before any ldapbulk module reads them
if not settings.configured:
    settings.configure(
        INSTALLED_APPS=["ldapbulk"],
        LDAP_SERVERS={
            "test_server": {
                "basedn": "dc=example,dc=com",
                "read": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                    "tls_verify": "never",
                },
                "write": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                    "tls_verify": "never",
                },
            }
        },
        LDAPBULK_CONTINUE_ON_ERROR=False,
    )
    django.setup()
