# tests/test_user_service.py
"""Tests for the MongoDB persistence layer (collections mocked)."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from app.core.exceptions import PersistenceError
from app.db.mongo import FORM_RECORDS_COLLECTION, PAYMENT_EVENTS_COLLECTION, USERS_COLLECTION
from app.services.user_service import UserService


@pytest.fixture
def collections():
    return {
        USERS_COLLECTION: MagicMock(),
        FORM_RECORDS_COLLECTION: MagicMock(),
        PAYMENT_EVENTS_COLLECTION: MagicMock(),
    }


@pytest.fixture
def service(collections):
    return UserService(database=collections)


def test_insert_payment_event_first_time(event_loop, service, collections):
    events = collections[PAYMENT_EVENTS_COLLECTION]
    events.insert_one = AsyncMock()

    inserted = event_loop.run_until_complete(service.insert_payment_event_if_absent("pay-1", {"user_id": 42}))

    assert inserted is True
    events.insert_one.assert_awaited_once_with({"user_id": 42, "payment_id": "pay-1"})


def test_insert_payment_event_duplicate(event_loop, service, collections):
    collections[PAYMENT_EVENTS_COLLECTION].insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))

    inserted = event_loop.run_until_complete(service.insert_payment_event_if_absent("pay-1", {"user_id": 42}))

    assert inserted is False


def test_driver_errors_become_persistence_errors(event_loop, service, collections):
    collections[PAYMENT_EVENTS_COLLECTION].insert_one = AsyncMock(
        side_effect=ServerSelectionTimeoutError("no servers")
    )

    with pytest.raises(PersistenceError):
        event_loop.run_until_complete(service.insert_payment_event_if_absent("pay-1", {}))


def test_upsert_user(event_loop, service, collections):
    users = collections[USERS_COLLECTION]
    users.find_one_and_update = AsyncMock(return_value={"user_id": 42, "status": "active"})

    user = event_loop.run_until_complete(service.upsert_user(42, {"status": "active", "contact.name": "Ana"}))

    assert user["status"] == "active"
    args, kwargs = users.find_one_and_update.call_args
    assert args[0] == {"user_id": 42}
    update = args[1]
    assert update["$set"]["status"] == "active"
    assert update["$set"]["contact.name"] == "Ana"
    assert "updated_at" in update["$set"]
    assert "created_at" in update["$setOnInsert"]
    assert kwargs["upsert"] is True


def test_is_active(event_loop, service, collections):
    users = collections[USERS_COLLECTION]
    users.find_one = AsyncMock(return_value={"user_id": 42, "status": "active"})
    assert event_loop.run_until_complete(service.is_active(42)) is True

    users.find_one = AsyncMock(return_value=None)
    assert event_loop.run_until_complete(service.is_active(42)) is False


def test_release_claim(event_loop, service, collections):
    collections[PAYMENT_EVENTS_COLLECTION].delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))

    assert event_loop.run_until_complete(service.delete_payment_event("pay-1")) is True
