from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidTenantKey(ValueError):
    """Raised when a tenant key fails the schema-name allowlist."""

    def __init__(self, key: str):
        super().__init__("invalid tenant key")
        self.key = key


__all__ = ["ConstraintViolation", "InvalidTenantKey"]
