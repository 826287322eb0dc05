"""Tenant identity core: permissions, dynamic user schemas, roles and credentials."""

__version__ = "0.1.0"
