from datetime import timedelta

import pytest
from sqlalchemy import select

from marketsync.db.tables import listing_history, provider_accounts
from marketsync.market.catalog import CatalogRepository, CatalogSeed
from marketsync.operations.errors import OperationConflict
from marketsync.operations.reconciler import OperationReconciler, ReconcileResult
from marketsync.operations.state import OperationKind, OperationStatus
from marketsync.providers.base import MutationReceipt, MutationRequest, OperationReport
from marketsync.providers.errors import ProviderAuthError, ProviderError

from helpers import FakeProvider


@pytest.fixture()
def provider():
    return FakeProvider(name="stockx")


@pytest.fixture()
def reconciler(engine, provider, clock):
    return OperationReconciler(
        engine,
        {"stockx": provider},
        clock=clock,
        timeout=timedelta(minutes=15),
        min_poll_interval=timedelta(seconds=20),
        batch_size=10,
    )


def create_request(item_id, account=None, **kwargs):
    return MutationRequest(
        catalog_item_id=item_id,
        provider="stockx",
        kind=kwargs.pop("kind", OperationKind.CREATE),
        product_key="prod-1",
        provider_variant_id="v-10",
        size="10",
        amount_cents=kwargs.pop("amount_cents", 15000),
        account_id=account,
        **kwargs,
    )


def history_rows(engine, listing_id):
    with engine.connect() as conn:
        return [
            dict(row)
            for row in conn.execute(
                select(listing_history).where(listing_history.c.listing_id == listing_id).order_by(listing_history.c.id)
            ).mappings()
        ]


@pytest.mark.asyncio
async def test_second_active_operation_is_rejected(reconciler, provider, catalog_item):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    assert operation.status is OperationStatus.PENDING
    assert operation.provider_operation_id == "op-1"

    with pytest.raises(OperationConflict):
        await reconciler.submit_mutation(create_request(catalog_item, amount_cents=16000))
    assert len(provider.submitted) == 1


@pytest.mark.asyncio
async def test_finished_operation_frees_the_item(reconciler, provider, catalog_item):
    provider.receipts.append(MutationReceipt(status=OperationStatus.COMPLETED, listing_id="L1"))
    first = await reconciler.submit_mutation(create_request(catalog_item))
    assert first.status is OperationStatus.COMPLETED

    second = await reconciler.submit_mutation(
        create_request(catalog_item, kind=OperationKind.UPDATE, listing_id="L1", amount_cents=14000)
    )
    assert second.status is OperationStatus.PENDING


@pytest.mark.asyncio
async def test_operation_times_out_without_provider_call(reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))

    clock.advance(minutes=14)
    stats = await reconciler.poll_pending_operations()
    assert stats.as_dict() == {"processed": 1, "completed": 0, "failed": 0, "timedOut": 0, "inProgress": 1}
    assert len(provider.poll_calls) == 1

    clock.advance(minutes=1, seconds=1)
    stats = await reconciler.poll_pending_operations()
    assert stats.timed_out == 1
    assert len(provider.poll_calls) == 1

    stored = reconciler.repository.get(operation.id)
    assert stored.status is OperationStatus.FAILED
    assert stored.error_code == "timeout"
    assert stored.completed_at == clock.now


@pytest.mark.asyncio
async def test_create_completion_projects_listing_once(engine, reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    provider.reports.append(OperationReport(status=OperationStatus.COMPLETED, listing_id="L1"))

    clock.advance(seconds=30)
    stats = await reconciler.poll_pending_operations()
    assert stats.completed == 1

    listing = reconciler.repository.get_listing("stockx", "L1")
    assert listing["status"] == "active"
    assert listing["amount_cents"] == 15000
    assert listing["catalog_item_id"] == catalog_item

    clock.advance(minutes=1)
    assert (await reconciler.poll_pending_operations()).processed == 0
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.UNCHANGED
    assert len(provider.poll_calls) == 1
    assert [row["status"] for row in history_rows(engine, "L1")] == ["active"]


@pytest.mark.asyncio
async def test_deactivate_marks_listing_inactive(engine, reconciler, provider, catalog_item, clock):
    provider.receipts.append(MutationReceipt(status=OperationStatus.COMPLETED, listing_id="L1"))
    await reconciler.submit_mutation(create_request(catalog_item))

    clock.advance(minutes=1)
    operation = await reconciler.submit_mutation(
        create_request(catalog_item, kind=OperationKind.DEACTIVATE, listing_id="L1")
    )
    provider.reports.append(OperationReport(status=OperationStatus.COMPLETED))
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.COMPLETED

    assert reconciler.repository.get_listing("stockx", "L1")["status"] == "inactive"
    assert [row["action"] for row in history_rows(engine, "L1")] == ["create", "deactivate"]


@pytest.mark.asyncio
async def test_provider_failure_is_recorded(reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    provider.reports.append(
        OperationReport(status=OperationStatus.FAILED, error_code="invalid_price", error_message="price too low")
    )
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.FAILED
    stored = reconciler.repository.get(operation.id)
    assert (stored.error_code, stored.error_message) == ("invalid_price", "price too low")


@pytest.mark.asyncio
async def test_completed_create_without_listing_id_fails(reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    provider.reports.append(OperationReport(status=OperationStatus.COMPLETED, raw={"status": "COMPLETED"}))
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.FAILED
    stored = reconciler.repository.get(operation.id)
    assert stored.status is OperationStatus.FAILED
    assert stored.error_code == "missing_listing_id"


@pytest.mark.asyncio
async def test_auth_failure_marks_account_broken(engine, reconciler, provider, catalog_item, account, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item, account))
    provider.reports.append(ProviderAuthError("stockx", "token expired", status_code=401))
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.FAILED

    stored = reconciler.repository.get(operation.id)
    assert stored.error_code == "auth_failed"
    with engine.connect() as conn:
        status = conn.execute(
            select(provider_accounts.c.status).where(provider_accounts.c.id == account)
        ).scalar_one()
    assert status == "broken"


@pytest.mark.asyncio
async def test_transient_poll_error_keeps_operation_active(reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    provider.reports.append(ProviderError("stockx", "bad gateway", status_code=502))
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.IN_PROGRESS
    stored = reconciler.repository.get(operation.id)
    assert stored.status is OperationStatus.PENDING
    assert stored.attempts == 1
    assert stored.error_message == "stockx: bad gateway"


@pytest.mark.asyncio
async def test_submit_failure_fails_operation(reconciler, provider, catalog_item):
    provider.receipts.append(ProviderError("stockx", "invalid variant", status_code=400))
    with pytest.raises(ProviderError):
        await reconciler.submit_mutation(create_request(catalog_item))
    operation = reconciler.repository.active_for(catalog_item, "stockx")
    assert operation is None
    retried = await reconciler.submit_mutation(create_request(catalog_item))
    assert retried.status is OperationStatus.PENDING


@pytest.mark.asyncio
async def test_poll_respects_interval_and_age_order(engine, reconciler, provider, catalog_item, clock):
    other = CatalogRepository(engine).ensure_item(CatalogSeed(sku="DZ5485-612"))
    await reconciler.submit_mutation(create_request(catalog_item))
    clock.advance(seconds=5)
    await reconciler.submit_mutation(create_request(other))

    assert (await reconciler.poll_pending_operations()).processed == 2
    clock.advance(seconds=10)
    assert (await reconciler.poll_pending_operations()).processed == 0
    clock.advance(seconds=10)
    assert (await reconciler.poll_pending_operations()).processed == 2
    assert [op_id for op_id, _ in provider.poll_calls] == ["op-1", "op-2", "op-1", "op-2"]


@pytest.mark.asyncio
async def test_status_never_moves_backwards(reconciler, provider, catalog_item, clock):
    operation = await reconciler.submit_mutation(create_request(catalog_item))
    provider.reports.extend(
        [OperationReport(status=OperationStatus.PROCESSING), OperationReport(status=OperationStatus.PENDING)]
    )
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.IN_PROGRESS
    clock.advance(seconds=30)
    assert await reconciler.reconcile_operation(operation.id) is ReconcileResult.IN_PROGRESS
    assert reconciler.repository.get(operation.id).status is OperationStatus.PROCESSING


@pytest.mark.asyncio
async def test_unexpected_submit_failure_does_not_strand_operation(reconciler, provider, catalog_item):
    provider.receipts.append(ValueError("could not convert string to float: 'XS'"))
    with pytest.raises(ValueError):
        await reconciler.submit_mutation(create_request(catalog_item))

    assert reconciler.repository.active_for(catalog_item, "stockx") is None
    failed = reconciler.repository.get(1)
    assert failed.status is OperationStatus.FAILED
    assert failed.error_code == "submit_failed"
    assert "XS" in failed.error_message

    retried = await reconciler.submit_mutation(create_request(catalog_item))
    assert retried.status is OperationStatus.PENDING


@pytest.mark.asyncio
async def test_one_broken_operation_does_not_stop_the_batch(engine, reconciler, provider, catalog_item, clock):
    other = CatalogRepository(engine).ensure_item(CatalogSeed(sku="DZ5485-612"))
    first = await reconciler.submit_mutation(create_request(catalog_item))
    clock.advance(seconds=5)
    second = await reconciler.submit_mutation(create_request(other))
    provider.reports.extend(
        [ValueError("garbled payload"), OperationReport(status=OperationStatus.COMPLETED, listing_id="L2")]
    )

    clock.advance(seconds=30)
    stats = await reconciler.poll_pending_operations()

    assert stats.as_dict() == {"processed": 2, "completed": 1, "failed": 0, "timedOut": 0, "inProgress": 1}
    assert reconciler.repository.get(first.id).status is OperationStatus.PENDING
    assert reconciler.repository.get(second.id).status is OperationStatus.COMPLETED
    assert reconciler.repository.active_for(catalog_item, "stockx").id == first.id
