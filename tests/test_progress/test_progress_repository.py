"""
Tests for the order and progress repositories against a mocked session.
"""

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from orderflow.database.models import Order, OrderProgress
from orderflow.services.progress.enums import OrderStatus, ProgressStage
from orderflow.services.progress.repository import (
    DuplicateStageProgressError,
    OrderRepository,
    ProgressRepository,
    ProgressRepositoryError,
)


def _result(rows=None, one=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = one
    result.scalars.return_value.all.return_value = rows or []
    return result


def _progress(order_id, stage, data=None):
    return OrderProgress(id=uuid.uuid4(), order_id=order_id, stage=stage, data=data or {})


# ============================================================================
# ProgressRepository
# ============================================================================


class TestProgressRepository:
    @pytest.fixture
    def repository(self, mock_session):
        return ProgressRepository(mock_session)

    @pytest.mark.asyncio
    async def test_create_flushes_without_commit(self, repository, mock_session):
        order_id = uuid.uuid4()

        record = await repository.create(order_id, ProgressStage.WAREHOUSE, {"status": True})

        assert record.order_id == order_id
        assert record.stage == ProgressStage.WAREHOUSE
        assert record.data == {"status": True}
        mock_session.add.assert_called_once_with(record)
        mock_session.flush.assert_awaited_once()
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unique_violation_is_duplicate(self, repository, mock_session):
        mock_session.flush.side_effect = IntegrityError(
            "INSERT INTO order_progress",
            {},
            Exception(
                'duplicate key value violates unique constraint '
                '"uq_order_progress_order_stage"'
            ),
        )

        with pytest.raises(DuplicateStageProgressError) as exc_info:
            await repository.create(uuid.uuid4(), ProgressStage.SHIPPING, {"status": False})

        assert exc_info.value.context["stage"] == "shipping"

    @pytest.mark.asyncio
    async def test_sqlite_unique_violation_is_duplicate(self, repository, mock_session):
        mock_session.flush.side_effect = IntegrityError(
            "INSERT INTO order_progress",
            {},
            Exception(
                "UNIQUE constraint failed: order_progress.order_id, order_progress.stage"
            ),
        )

        with pytest.raises(DuplicateStageProgressError):
            await repository.create(uuid.uuid4(), ProgressStage.WAREHOUSE, {"status": True})

    @pytest.mark.asyncio
    async def test_other_integrity_error(self, repository, mock_session):
        mock_session.flush.side_effect = IntegrityError(
            "INSERT INTO order_progress",
            {},
            Exception('insert or update violates foreign key constraint "order_progress_order_id_fkey"'),
        )

        with pytest.raises(ProgressRepositoryError) as exc_info:
            await repository.create(uuid.uuid4(), ProgressStage.WAREHOUSE, {"status": True})

        assert not isinstance(exc_info.value, DuplicateStageProgressError)

    @pytest.mark.asyncio
    async def test_database_error_on_create(self, repository, mock_session):
        mock_session.flush.side_effect = OperationalError("INSERT", {}, Exception("gone"))

        with pytest.raises(ProgressRepositoryError):
            await repository.create(uuid.uuid4(), ProgressStage.WAREHOUSE, {"status": True})

    @pytest.mark.asyncio
    async def test_update_replaces_payload(self, repository, mock_session):
        record = _progress(uuid.uuid4(), ProgressStage.WAREHOUSE, {"status": True, "notes": "a"})

        updated = await repository.update(record, {"status": False})

        assert updated.data == {"status": False}
        assert updated.updated_at is not None
        assert updated.updated_at.tzinfo is not None
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete(self, repository, mock_session):
        record = _progress(uuid.uuid4(), ProgressStage.RESULT, {"status": False})

        await repository.delete(record)

        mock_session.delete.assert_awaited_once_with(record)
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_find_for_orders_groups_in_stage_order(self, repository, mock_session):
        first, second = uuid.uuid4(), uuid.uuid4()
        mock_session.execute.return_value = _result(
            rows=[
                _progress(first, ProgressStage.SHIPPING),
                _progress(second, ProgressStage.WAREHOUSE),
                _progress(first, ProgressStage.WAREHOUSE),
            ]
        )

        grouped = await repository.find_for_orders([first, second])

        assert [r.stage for r in grouped[first]] == [
            ProgressStage.WAREHOUSE,
            ProgressStage.SHIPPING,
        ]
        assert len(grouped[second]) == 1

    @pytest.mark.asyncio
    async def test_find_for_no_orders(self, repository, mock_session):
        assert await repository.find_for_orders([]) == {}
        mock_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_find_all_without_records(self, repository, mock_session):
        mock_session.execute.return_value = _result()
        assert await repository.find_all(uuid.uuid4()) == []

    @pytest.mark.asyncio
    async def test_get_by_id(self, repository, mock_session):
        record = _progress(uuid.uuid4(), ProgressStage.APPLIED)
        mock_session.execute.return_value = _result(one=record)

        assert await repository.get_by_id(record.id) is record

    @pytest.mark.asyncio
    async def test_get_by_id_refresh_overwrites_session_copy(self, repository, mock_session):
        mock_session.execute.return_value = _result()

        await repository.get_by_id(uuid.uuid4(), refresh=True)

        statement = mock_session.execute.await_args.args[0]
        assert statement.get_execution_options()["populate_existing"] is True

    @pytest.mark.asyncio
    async def test_get_by_id_plain_read(self, repository, mock_session):
        mock_session.execute.return_value = _result()

        await repository.get_by_id(uuid.uuid4())

        statement = mock_session.execute.await_args.args[0]
        assert "populate_existing" not in statement.get_execution_options()

    @pytest.mark.asyncio
    async def test_query_failure(self, repository, mock_session):
        mock_session.execute.side_effect = OperationalError("SELECT", {}, Exception("gone"))

        with pytest.raises(ProgressRepositoryError):
            await repository.find(uuid.uuid4(), ProgressStage.SHIPPING)


# ============================================================================
# OrderRepository
# ============================================================================


class TestOrderRepository:
    @pytest.fixture
    def repository(self, mock_session):
        return OrderRepository(mock_session)

    @pytest.mark.asyncio
    async def test_get_by_id_for_update_locks_row(self, repository, mock_session):
        mock_session.execute.return_value = _result()

        await repository.get_by_id(uuid.uuid4(), for_update=True)

        statement = mock_session.execute.await_args.args[0]
        compiled = str(statement.compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" in compiled

    @pytest.mark.asyncio
    async def test_plain_read_does_not_lock(self, repository, mock_session):
        mock_session.execute.return_value = _result()

        assert await repository.get_by_id(uuid.uuid4()) is None

        statement = mock_session.execute.await_args.args[0]
        assert "FOR UPDATE" not in str(statement.compile(dialect=postgresql.dialect()))

    @pytest.mark.asyncio
    async def test_get_many(self, repository, mock_session):
        order = Order(id=uuid.uuid4(), status=OrderStatus.PENDING)
        mock_session.execute.return_value = _result(rows=[order])

        assert await repository.get_many([order.id, uuid.uuid4()]) == {order.id: order}

    @pytest.mark.asyncio
    async def test_create_pending_order(self, repository, mock_session):
        order = await repository.create(order_number="ORD-0042")

        assert order.status == OrderStatus.PENDING
        assert order.order_number == "ORD-0042"
        mock_session.add.assert_called_once_with(order)
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_status_sets_fields(self, repository, mock_session):
        order = Order(id=uuid.uuid4(), status=OrderStatus.DELIVERED)

        await repository.update_status(
            order, OrderStatus.CANCELLED, cancellation_reason="Duplicate order"
        )

        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "Duplicate order"
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_status_failure(self, repository, mock_session):
        mock_session.flush.side_effect = OperationalError("UPDATE", {}, Exception("gone"))
        order = Order(id=uuid.uuid4(), status=OrderStatus.PENDING)

        with pytest.raises(ProgressRepositoryError):
            await repository.update_status(order, OrderStatus.WAREHOUSE)


# ============================================================================
# Model mapping
# ============================================================================


class TestModelMapping:
    def test_models_declare_no_relationships(self):
        assert not inspect(Order).relationships
        assert not inspect(OrderProgress).relationships

    def test_progress_rows_cascade_with_their_order(self):
        (foreign_key,) = OrderProgress.__table__.c.order_id.foreign_keys

        assert foreign_key.column.table.name == "orders"
        assert foreign_key.ondelete == "CASCADE"
