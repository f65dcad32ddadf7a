"""Unit tests for repository retry and write semantics."""

import re
from unittest.mock import Mock
from uuid import UUID, uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from storypack.core.exceptions import CollaboratorUnavailable, ConstraintViolation
from storypack.repositories.baseline_repository import BaselineRepository
from storypack.repositories.chunk_repository import ChunkRepository, nearest_pairs_query
from storypack.repositories.conflict_repository import ConflictRepository
from storypack.repositories.pack_repository import PackRepository


def transient_error():
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


class TestReadRetry:
    @pytest.mark.asyncio
    async def test_single_transient_error_is_retried(self, mock_session):
        row = object()
        result = Mock()
        result.scalar_one_or_none.return_value = row
        mock_session.execute.side_effect = [transient_error(), result]

        found = await ChunkRepository(mock_session).get_by_id(uuid4())

        assert found is row
        assert mock_session.execute.await_count == 2
        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_failure_raises_unavailable(self, mock_session):
        mock_session.execute.side_effect = [transient_error(), transient_error()]

        with pytest.raises(CollaboratorUnavailable):
            await ChunkRepository(mock_session).get_by_id(uuid4())


class TestWrites:
    @pytest.mark.asyncio
    async def test_empty_classifications_skip_database(self, mock_session):
        assert await ChunkRepository(mock_session).save_classifications([]) == 0
        mock_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_conflict_requires_canonical_order(self, mock_session):
        low = UUID("00000000-0000-0000-0000-000000000001")
        high = UUID("00000000-0000-0000-0000-000000000002")

        with pytest.raises(ValueError):
            await ConflictRepository(mock_session).create_if_absent(
                workspace_id=uuid4(),
                project_id=uuid4(),
                chunk_a_id=high,
                chunk_b_id=low,
                similarity=0.9,
                summary="",
                confidence=0.9,
            )

    @pytest.mark.asyncio
    async def test_taken_baseline_number_is_constraint_violation(self, mock_session):
        mock_session.add = Mock()
        mock_session.flush.side_effect = IntegrityError("INSERT INTO baselines", {}, Exception("duplicate key"))

        with pytest.raises(ConstraintViolation):
            await BaselineRepository(mock_session).create_and_point_pack(
                workspace_id=uuid4(),
                pack_id=uuid4(),
                pack_version_id=uuid4(),
                version_number=2,
                version_label="Baseline v2",
                snapshot_data={},
                created_by="alex",
            )

        mock_session.rollback.assert_awaited_once()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_pack_update_rolls_back_baseline(self, mock_session):
        mock_session.add = Mock()
        mock_session.execute.side_effect = SQLAlchemyError("UPDATE packs failed")

        with pytest.raises(SQLAlchemyError):
            await BaselineRepository(mock_session).create_and_point_pack(
                workspace_id=uuid4(),
                pack_id=uuid4(),
                pack_version_id=uuid4(),
                version_number=1,
                version_label="Baseline v1",
                snapshot_data={},
                created_by="alex",
            )

        mock_session.flush.assert_awaited_once()
        update_statement = mock_session.execute.await_args.args[0]
        assert update_statement.table.name == "packs"
        mock_session.rollback.assert_awaited_once()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_entities_means_no_links(self, mock_session):
        assert await PackRepository(mock_session).get_evidence_links([], []) == []
        mock_session.execute.assert_not_called()


class TestNearestPairs:
    def test_query_excludes_recorded_pairs_without_limit(self):
        query = nearest_pairs_query(uuid4(), 0.85)

        sql = str(query.compile(dialect=postgresql.dialect()))

        assert re.search(r"NOT \(?EXISTS \(SELECT", sql)
        assert "evidence_conflicts" in sql
        assert "LIMIT" not in sql

    def test_changed_chunks_restrict_either_side(self):
        query = nearest_pairs_query(uuid4(), 0.85, chunk_ids=[uuid4()])

        sql = str(query.compile(dialect=postgresql.dialect()))

        assert sql.count(" IN (") == 2

    @pytest.mark.asyncio
    async def test_pages_until_exhausted(self, mock_session):
        def row(similarity):
            return (uuid4(), uuid4(), "deadline is Monday", "deadline is Friday", similarity, "notes", "email")

        pages = [[row(0.99), row(0.97)], [row(0.95), row(0.93)], [row(0.9)]]
        results = []
        for page in pages:
            result = Mock()
            result.all.return_value = page
            results.append(result)
        mock_session.execute.side_effect = results

        pairs = await ChunkRepository(mock_session).nearest_pairs(uuid4(), 0.85, page_size=2)

        assert mock_session.execute.await_count == 3
        assert [pair.similarity for pair in pairs] == [0.99, 0.97, 0.95, 0.93, 0.9]
        offsets = [call.args[0]._offset for call in mock_session.execute.await_args_list]
        assert offsets == [0, 2, 4]
