#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapbulk',
    version='1.0.0',
    description='Bulk add, modify, delete and group membership changes for LDAP directories',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'ldif'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    install_requires=[
        'Django',
        'pytz',
        'ldap_filter',
        'python-ldap',
    ],
    extras_require={
        'test': ['pytest'],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
