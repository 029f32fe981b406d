"""Serialization helpers for tenantcore."""

from tenantcore.serialization.json import TenantCoreJSONEncoder, json_dumps, json_loads

__all__ = [
    "TenantCoreJSONEncoder",
    "json_dumps",
    "json_loads",
]
