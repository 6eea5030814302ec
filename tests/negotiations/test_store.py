from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.negotiations.errors import ConcurrencyConflict, NotFound
from app.negotiations.models import ACTIVE_STATUSES, NegotiationStatus
from app.negotiations.store import NegotiationStore, ensure_indexes

pytestmark = pytest.mark.asyncio


# --- Helper to build a mock database ---

def _make_mock_db(find_one_result=None, matched_count=1, scan_result=None):
    """Mock MongoDB whose negotiations collection answers with the given results."""
    mock_cursor = MagicMock()
    mock_cursor.sort = MagicMock(return_value=mock_cursor)
    mock_cursor.to_list = AsyncMock(return_value=scan_result or [])

    mock_collection = MagicMock()
    mock_collection.find_one = AsyncMock(return_value=find_one_result)
    mock_collection.insert_one = AsyncMock()
    mock_collection.replace_one = AsyncMock(return_value=MagicMock(matched_count=matched_count))
    mock_collection.find = MagicMock(return_value=mock_cursor)
    mock_collection.create_index = AsyncMock()

    mock_db = MagicMock()
    mock_db.negotiations = mock_collection
    return mock_db


async def test_get_returns_record(sample_negotiation):
    mock_db = _make_mock_db(find_one_result=sample_negotiation.model_dump())
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        record = await NegotiationStore().get("NEG-test0001")

    assert record == sample_negotiation
    mock_db.negotiations.find_one.assert_awaited_once_with({"negotiation_id": "NEG-test0001"}, {"_id": 0})


async def test_get_missing_raises_not_found():
    mock_db = _make_mock_db(find_one_result=None)
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        with pytest.raises(NotFound):
            await NegotiationStore().get("NEG-missing")


async def test_insert_starts_at_version_one(sample_negotiation):
    mock_db = _make_mock_db()
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        record = await NegotiationStore().insert(sample_negotiation)

    assert record.version == 1
    doc = mock_db.negotiations.insert_one.await_args.args[0]
    assert doc["version"] == 1
    assert doc["status"] == NegotiationStatus.OFFER_SENT


async def test_put_if_version_filters_on_version_and_bumps_it(sample_negotiation):
    mock_db = _make_mock_db(matched_count=1)
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        record = await NegotiationStore().put_if_version(sample_negotiation, expected_version=2)

    assert record.version == 3
    query, doc = mock_db.negotiations.replace_one.await_args.args
    assert query == {"negotiation_id": "NEG-test0001", "version": 2}
    assert doc["version"] == 3


async def test_put_if_version_conflict_carries_current_record(sample_negotiation):
    current = sample_negotiation.model_copy(update={"version": 5, "status": NegotiationStatus.EXPIRED})
    mock_db = _make_mock_db(find_one_result=current.model_dump(), matched_count=0)
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await NegotiationStore().put_if_version(sample_negotiation, expected_version=2)

    assert exc_info.value.negotiation.version == 5
    assert exc_info.value.negotiation.status == NegotiationStatus.EXPIRED


async def test_put_if_version_conflict_on_deleted_record(sample_negotiation):
    mock_db = _make_mock_db(find_one_result=None, matched_count=0)
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await NegotiationStore().put_if_version(sample_negotiation, expected_version=2)
    assert exc_info.value.negotiation is None


async def test_scan_builds_status_and_deadline_query(sample_negotiation):
    mock_db = _make_mock_db(scan_result=[sample_negotiation.model_dump()])
    cutoff = sample_negotiation.expires_at
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        records = await NegotiationStore().scan(statuses=ACTIVE_STATUSES, expires_before=cutoff, limit=10)

    assert records == [sample_negotiation]
    query, projection = mock_db.negotiations.find.call_args.args
    assert sorted(query["status"]["$in"]) == sorted(s.value for s in ACTIVE_STATUSES)
    assert query["expires_at"] == {"$lt": cutoff}
    assert projection == {"_id": 0}
    mock_db.negotiations.find.return_value.to_list.assert_awaited_once_with(length=10)


async def test_scan_without_filters_matches_everything():
    mock_db = _make_mock_db()
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        assert await NegotiationStore().scan() == []
    assert mock_db.negotiations.find.call_args.args[0] == {}


async def test_ensure_indexes():
    mock_db = _make_mock_db()
    with patch("app.negotiations.store.get_database", return_value=mock_db):
        await ensure_indexes()

    calls = mock_db.negotiations.create_index.await_args_list
    assert calls[0].args == ("negotiation_id",)
    assert calls[0].kwargs == {"unique": True}
    assert calls[1].args == ([("status", 1), ("expires_at", 1)],)
