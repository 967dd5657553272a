"""Tenant partition handles.

Tenant data lives in one schema per tenant (``tenant_<key>``). Keys come from
the tenant directory, but they still pass through an allowlist before they are
turned into a schema handle, and the handle is only ever composed into SQL as
a quoted identifier.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from tenantauth.storage.errors import InvalidTenantKey

_TENANT_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,47}$")
SCHEMA_PREFIX = "tenant_"


@dataclass(frozen=True)
class TenantKey:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not _TENANT_KEY_RE.fullmatch(self.value):
            raise InvalidTenantKey(str(self.value))

    @property
    def schema(self) -> str:
        return f"{SCHEMA_PREFIX}{self.value}"

    def __str__(self) -> str:
        return self.value


def is_valid_tenant_key(value: str) -> bool:
    return isinstance(value, str) and bool(_TENANT_KEY_RE.fullmatch(value))
