"""Operation reconciliation failures."""

from __future__ import annotations

from typing import Any


class OperationConflict(RuntimeError):
    """Another operation for the same catalog item and provider is still active."""

    def __init__(self, catalog_item_id: int, provider: str) -> None:
        super().__init__(f"an operation for item {catalog_item_id} on {provider} is already active")
        self.catalog_item_id = catalog_item_id
        self.provider = provider


class DataIntegrityError(RuntimeError):
    """A provider reported success with a result we cannot use."""

    def __init__(self, message: str, *, error_code: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.context = context or {}
