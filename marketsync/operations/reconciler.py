"""Drives submitted listing mutations to a terminal state."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.operations.errors import DataIntegrityError, OperationConflict
from marketsync.operations.repository import Operation, OperationRepository
from marketsync.operations.state import (
    ACTIVE,
    SUCCESSFUL,
    OperationKind,
    OperationStatus,
    can_transition,
    is_terminal,
    is_timed_out,
)
from marketsync.providers.base import MarketProvider, MutationRequest, OperationReport
from marketsync.providers.errors import ProviderAuthError, ProviderError
from marketsync.utils.dates import utcnow

logger = logging.getLogger(__name__)


class ReconcileResult(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    IN_PROGRESS = "in_progress"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class PollStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    in_progress: int = 0

    def count(self, result: ReconcileResult) -> None:
        self.processed += 1
        if result is ReconcileResult.COMPLETED:
            self.completed += 1
        elif result is ReconcileResult.FAILED:
            self.failed += 1
        elif result is ReconcileResult.TIMED_OUT:
            self.timed_out += 1
        elif result is ReconcileResult.IN_PROGRESS:
            self.in_progress += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "timedOut": self.timed_out,
            "inProgress": self.in_progress,
        }


class OperationReconciler:
    def __init__(
        self,
        engine: Engine,
        providers: dict[str, MarketProvider],
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout: timedelta | None = None,
        min_poll_interval: timedelta | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.engine = engine
        self.providers = providers
        self.repository = OperationRepository(engine)
        self.clock = clock
        self.timeout = timeout or timedelta(minutes=float(os.environ.get("OPERATION_TIMEOUT_MINUTES", "15")))
        self.min_poll_interval = min_poll_interval or timedelta(
            seconds=float(os.environ.get("OPERATION_MIN_POLL_INTERVAL_SECONDS", "20"))
        )
        self.batch_size = batch_size or int(os.environ.get("OPERATION_POLL_BATCH_SIZE", "50"))

    async def _db(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def submit_mutation(self, request: MutationRequest) -> Operation:
        """Record a mutation and send it to the provider.

        Raises OperationConflict when the item already has an active operation
        on that provider. Immediate provider results are applied right away;
        otherwise the operation is left for the poller.
        """
        provider = self.providers[request.provider]
        now = self.clock()
        try:
            operation = await self._db(self.repository.create, request, now)
        except OperationConflict:
            logger.info(
                "Rejected %s for item %s on %s: operation already active",
                request.kind.value,
                request.catalog_item_id,
                request.provider,
            )
            raise

        try:
            receipt = await provider.submit_mutation(request)
        except ProviderAuthError as exc:
            await self._handle_auth_failure(operation, exc, self.clock())
            raise
        except Exception as exc:
            # never leave a pending row without a provider operation behind it
            await self._db(
                self.repository.finish,
                operation,
                OperationStatus.FAILED,
                self.clock(),
                error_code="submit_failed",
                error_message=str(exc) or repr(exc),
            )
            logger.warning("Submitting operation %s to %s failed: %s", operation.id, request.provider, exc)
            raise

        now = self.clock()
        if is_terminal(receipt.status):
            report = OperationReport(status=receipt.status, listing_id=receipt.listing_id, raw=receipt.raw)
            await self._apply_report(operation, report, now)
        else:
            await self._db(
                self.repository.record_submission,
                operation.id,
                provider_operation_id=receipt.provider_operation_id,
                listing_id=receipt.listing_id,
                status=receipt.status,
                now=now,
            )
            logger.info(
                "Submitted %s operation %s to %s as %s",
                request.kind.value,
                operation.id,
                request.provider,
                receipt.provider_operation_id,
            )
        return await self._db(self.repository.get, operation.id)

    async def poll_pending_operations(self, *, cancel_event: asyncio.Event | None = None) -> PollStats:
        """Poll one bounded batch of active operations, oldest first."""
        now = self.clock()
        operations = await self._db(self.repository.fetch_pollable, now, self.min_poll_interval, self.batch_size)
        stats = PollStats()
        for operation in operations:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Operation poll cancelled after %s of %s operations", stats.processed, len(operations))
                break
            try:
                result = await self._reconcile(operation, self.clock())
            except SQLAlchemyError as exc:
                logger.warning("Could not reconcile operation %s: %s", operation.id, exc)
                result = ReconcileResult.IN_PROGRESS
            except Exception:
                # left active; the next pass or the timeout settles it
                logger.exception("Unexpected failure reconciling operation %s", operation.id)
                result = ReconcileResult.IN_PROGRESS
            stats.count(result)
        logger.info(
            "Polled %s operations: %s completed, %s failed, %s timed out, %s in progress",
            stats.processed,
            stats.completed,
            stats.failed,
            stats.timed_out,
            stats.in_progress,
        )
        return stats

    async def reconcile_operation(self, operation_id: int) -> ReconcileResult:
        operation = await self._db(self.repository.get, operation_id)
        if operation is None:
            raise LookupError(f"operation {operation_id} does not exist")
        return await self._reconcile(operation, self.clock())

    async def _reconcile(self, operation: Operation, now: datetime) -> ReconcileResult:
        if is_terminal(operation.status):
            return ReconcileResult.UNCHANGED

        if is_timed_out(operation.created_at, now, self.timeout):
            applied = await self._db(
                self.repository.finish,
                operation,
                OperationStatus.FAILED,
                now,
                error_code="timeout",
                error_message=f"no terminal status after {self.timeout}",
                history_status="timeout",
            )
            if applied:
                logger.warning("Operation %s on %s timed out", operation.id, operation.provider)
                return ReconcileResult.TIMED_OUT
            return ReconcileResult.UNCHANGED

        provider = self.providers.get(operation.provider)
        if not operation.provider_operation_id or provider is None:
            # Nothing to ask the provider; only the timeout can end this operation.
            await self._db(self.repository.mark_polled, operation.id, now)
            return ReconcileResult.IN_PROGRESS

        try:
            report = await provider.poll_operation(operation.provider_operation_id, listing_id=operation.listing_id)
        except ProviderAuthError as exc:
            await self._handle_auth_failure(operation, exc, now)
            return ReconcileResult.FAILED
        except ProviderError as exc:
            logger.warning("Polling operation %s on %s failed: %s", operation.id, operation.provider, exc)
            await self._db(self.repository.mark_polled, operation.id, now, error_message=str(exc))
            return ReconcileResult.IN_PROGRESS

        return await self._apply_report(operation, report, now)

    async def _apply_report(self, operation: Operation, report: OperationReport, now: datetime) -> ReconcileResult:
        if report.status in ACTIVE:
            # providers may echo "queued" after "processing"; never move backwards
            status = report.status if can_transition(operation.status, report.status) else None
            await self._db(self.repository.mark_polled, operation.id, now, status=status)
            return ReconcileResult.IN_PROGRESS

        if report.status in SUCCESSFUL:
            try:
                listing_id = self._require_listing_id(operation, report)
            except DataIntegrityError as exc:
                logger.error(
                    "Operation %s (%s on %s, provider operation %s) reported %s without a listing id: %s payload=%s",
                    operation.id,
                    operation.kind.value,
                    operation.provider,
                    operation.provider_operation_id,
                    report.status.value,
                    exc,
                    exc.context,
                )
                applied = await self._db(
                    self.repository.finish,
                    operation,
                    OperationStatus.FAILED,
                    now,
                    error_code=exc.error_code,
                    error_message=str(exc),
                    result=report.raw,
                )
                return ReconcileResult.FAILED if applied else ReconcileResult.UNCHANGED
            payload = operation.payload or {}
            applied = await self._db(
                self.repository.finish,
                operation,
                report.status,
                now,
                listing_id=listing_id,
                result=report.raw,
                amount_cents=payload.get("amount_cents"),
                currency=payload.get("currency"),
            )
            if applied:
                logger.info("Operation %s %s: listing %s", operation.id, report.status.value, listing_id)
                return ReconcileResult.COMPLETED
            return ReconcileResult.UNCHANGED

        applied = await self._db(
            self.repository.finish,
            operation,
            OperationStatus.FAILED,
            now,
            error_code=report.error_code or "provider_failed",
            error_message=report.error_message,
            result=report.raw,
        )
        if applied:
            logger.warning(
                "Operation %s failed on %s: %s %s",
                operation.id,
                operation.provider,
                report.error_code,
                report.error_message,
            )
            return ReconcileResult.FAILED
        return ReconcileResult.UNCHANGED

    def _require_listing_id(self, operation: Operation, report: OperationReport) -> str | None:
        listing_id = report.listing_id or operation.listing_id
        if operation.kind is OperationKind.CREATE and not listing_id:
            raise DataIntegrityError(
                "create succeeded without a listing id",
                error_code="missing_listing_id",
                context={"raw": report.raw, "payload": operation.payload},
            )
        return listing_id

    async def _handle_auth_failure(self, operation: Operation, exc: ProviderAuthError, now: datetime) -> None:
        broken = await self._db(self.repository.mark_account_broken, operation, str(exc), now)
        await self._db(
            self.repository.finish,
            operation,
            OperationStatus.FAILED,
            now,
            error_code="auth_failed",
            error_message=str(exc),
        )
        logger.warning(
            "%s rejected credentials for operation %s; marked %s account(s) broken",
            operation.provider,
            operation.id,
            broken,
        )
