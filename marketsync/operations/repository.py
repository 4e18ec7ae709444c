"""Persistence for mutation operations, listings and provider accounts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from marketsync.db.tables import (
    ACTIVE_OPERATION_STATUSES,
    dialect_insert,
    listing_history,
    listings,
    mutation_operations,
    provider_accounts,
)
from marketsync.operations.errors import OperationConflict
from marketsync.operations.state import OperationKind, OperationStatus, listing_status_for
from marketsync.providers.base import MutationRequest

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Operation:
    id: int
    catalog_item_id: int
    provider: str
    account_id: int | None
    kind: OperationKind
    status: OperationStatus
    provider_operation_id: str | None
    listing_id: str | None
    variant_id: int | None
    payload: dict[str, Any] | None
    result: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    attempts: int
    created_at: datetime
    updated_at: datetime
    last_polled_at: datetime | None
    completed_at: datetime | None


def _to_operation(row) -> Operation:
    data = dict(row)
    data["kind"] = OperationKind(data["kind"])
    data["status"] = OperationStatus(data["status"])
    return Operation(**data)


_ACTIVE = mutation_operations.c.status.in_(ACTIVE_OPERATION_STATUSES)


class OperationRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, request: MutationRequest, now: datetime) -> Operation:
        """Insert a pending operation; the partial unique index rejects a second active one."""
        values = {
            "catalog_item_id": request.catalog_item_id,
            "provider": request.provider,
            "account_id": request.account_id,
            "kind": request.kind.value,
            "status": OperationStatus.PENDING.value,
            "listing_id": request.listing_id,
            "variant_id": request.variant_id,
            "payload": request.payload(),
            "attempts": 0,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self.engine.begin() as conn:
                result = conn.execute(mutation_operations.insert().values(**values))
                operation_id = int(result.inserted_primary_key[0])
        except IntegrityError as exc:
            if self.active_for(request.catalog_item_id, request.provider) is not None:
                raise OperationConflict(request.catalog_item_id, request.provider) from exc
            raise
        operation = self.get(operation_id)
        if operation is None:
            raise LookupError(f"operation {operation_id} vanished after insert")
        return operation

    def get(self, operation_id: int) -> Operation | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(mutation_operations).where(mutation_operations.c.id == operation_id)
            ).mappings().first()
        return _to_operation(row) if row else None

    def active_for(self, catalog_item_id: int, provider: str) -> Operation | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(mutation_operations).where(
                    mutation_operations.c.catalog_item_id == catalog_item_id,
                    mutation_operations.c.provider == provider,
                    _ACTIVE,
                )
            ).mappings().first()
        return _to_operation(row) if row else None

    def fetch_pollable(self, now: datetime, min_interval: timedelta, limit: int) -> list[Operation]:
        """Active operations not polled within ``min_interval``, oldest first."""
        stmt = (
            select(mutation_operations)
            .where(
                _ACTIVE,
                or_(
                    mutation_operations.c.last_polled_at.is_(None),
                    mutation_operations.c.last_polled_at <= now - min_interval,
                ),
            )
            .order_by(mutation_operations.c.created_at.asc(), mutation_operations.c.id.asc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [_to_operation(row) for row in conn.execute(stmt).mappings()]

    def record_submission(
        self,
        operation_id: int,
        *,
        provider_operation_id: str | None,
        listing_id: str | None,
        status: OperationStatus,
        now: datetime,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(mutation_operations)
                .where(mutation_operations.c.id == operation_id, _ACTIVE)
                .values(
                    provider_operation_id=provider_operation_id,
                    listing_id=func.coalesce(listing_id, mutation_operations.c.listing_id),
                    status=status.value,
                    updated_at=now,
                )
            )

    def mark_polled(
        self,
        operation_id: int,
        now: datetime,
        *,
        status: OperationStatus | None = None,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "last_polled_at": now,
            "updated_at": now,
            "attempts": mutation_operations.c.attempts + 1,
        }
        if status is not None:
            values["status"] = status.value
        if error_message is not None:
            values["error_message"] = error_message
        with self.engine.begin() as conn:
            conn.execute(update(mutation_operations).where(mutation_operations.c.id == operation_id, _ACTIVE).values(**values))

    def finish(
        self,
        operation: Operation,
        status: OperationStatus,
        now: datetime,
        *,
        listing_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        result: dict[str, Any] | None = None,
        amount_cents: int | None = None,
        currency: str | None = None,
        history_status: str | None = None,
    ) -> bool:
        """Move an active operation to a terminal status and project it onto its listing.

        The update only matches while the operation is still active, so a
        terminal state is never applied twice. Returns False when another
        poller got there first.
        """
        listing_id = listing_id or operation.listing_id
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(mutation_operations)
                .where(mutation_operations.c.id == operation.id, _ACTIVE)
                .values(
                    status=status.value,
                    listing_id=listing_id,
                    error_code=error_code,
                    error_message=error_message,
                    result=result,
                    last_polled_at=now,
                    updated_at=now,
                    completed_at=now,
                    attempts=mutation_operations.c.attempts + 1,
                )
            )
            if updated.rowcount != 1:
                return False
            if not listing_id:
                return True
            succeeded = status in (OperationStatus.COMPLETED, OperationStatus.PARTIAL_SUCCESS)
            listing_status = listing_status_for(operation.kind)
            if succeeded:
                self._project_listing(conn, operation, listing_id, listing_status, amount_cents, currency, now)
            conn.execute(
                listing_history.insert().values(
                    provider=operation.provider,
                    listing_id=listing_id,
                    operation_id=operation.id,
                    action=operation.kind.value,
                    status=history_status or (listing_status if succeeded else status.value),
                    amount_cents=amount_cents,
                    details={"operation_status": status.value, "error_code": error_code, "error_message": error_message},
                    recorded_at=now,
                )
            )
        return True

    def _project_listing(
        self,
        conn,
        operation: Operation,
        listing_id: str,
        listing_status: str,
        amount_cents: int | None,
        currency: str | None,
        now: datetime,
    ) -> None:
        if operation.kind is OperationKind.CREATE:
            stmt = dialect_insert(conn, listings).values(
                provider=operation.provider,
                listing_id=listing_id,
                catalog_item_id=operation.catalog_item_id,
                variant_id=operation.variant_id,
                account_id=operation.account_id,
                status=listing_status,
                amount_cents=amount_cents,
                currency=currency,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                stmt.on_conflict_do_update(
                    index_elements=["provider", "listing_id"],
                    set_={
                        "status": stmt.excluded.status,
                        "amount_cents": stmt.excluded.amount_cents,
                        "currency": stmt.excluded.currency,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
            )
            return
        values: dict[str, Any] = {"status": listing_status, "updated_at": now}
        if operation.kind is OperationKind.UPDATE and amount_cents is not None:
            values["amount_cents"] = amount_cents
        result = conn.execute(
            update(listings)
            .where(and_(listings.c.provider == operation.provider, listings.c.listing_id == listing_id))
            .values(**values)
        )
        if result.rowcount == 0:
            logger.warning(
                "Operation %s completed %s for unknown %s listing %s",
                operation.id,
                operation.kind.value,
                operation.provider,
                listing_id,
            )

    def get_listing(self, provider: str, listing_id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(listings).where(listings.c.provider == provider, listings.c.listing_id == listing_id)
            ).mappings().first()
        return dict(row) if row else None

    def mark_account_broken(self, operation: Operation, message: str, now: datetime) -> int:
        """Flag the connection that owns ``operation`` so the user is asked to reconnect."""
        if operation.account_id is not None:
            condition = provider_accounts.c.id == operation.account_id
        else:
            condition = provider_accounts.c.provider == operation.provider
        with self.engine.begin() as conn:
            result = conn.execute(
                update(provider_accounts).where(condition).values(status="broken", last_error=message, updated_at=now)
            )
        return result.rowcount
