"""Shared test fixtures for the SubsBot test suite."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from app.core.exceptions import DeliveryError, PersistenceError, ProviderError
from app.schemas.payment import PaymentInfo


@pytest.fixture
def event_loop():
    """Fresh event loop per test so session timers never leak between tests."""
    loop = asyncio.new_event_loop()
    yield loop
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    loop.close()


class FakeRepository:
    """
    In-memory stand-in for UserService.

    `insert_payment_event_if_absent` keeps the unique-key semantics of the
    Mongo ledger. Names listed in `failing` raise PersistenceError.
    """

    def __init__(self):
        self.users: Dict[int, Dict[str, Any]] = {}
        self.forms: List[Dict[str, Any]] = []
        self.payment_events: Dict[str, Dict[str, Any]] = {}
        self.upserts: List[Dict[str, Any]] = []
        self.failing = set()

    def _check(self, name: str):
        if name in self.failing:
            raise PersistenceError(f"{name} unavailable")

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        self._check("get_user")
        return self.users.get(user_id)

    async def is_active(self, user_id: int) -> bool:
        user = await self.get_user(user_id)
        return bool(user) and user.get("status") == "active"

    async def upsert_user(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._check("upsert_user")
        await asyncio.sleep(0)
        user = self.users.setdefault(user_id, {"user_id": user_id, "created_at": datetime.utcnow()})
        for key, value in fields.items():
            if "." in key:
                parent, child = key.split(".", 1)
                user.setdefault(parent, {})[child] = value
            else:
                user[key] = value
        self.upserts.append({"user_id": user_id, **fields})
        return user

    async def insert_form_record(self, fields: Dict[str, Any]) -> str:
        self._check("insert_form_record")
        self.forms.append({**fields, "created_at": datetime.utcnow()})
        return str(len(self.forms))

    async def get_latest_form_record(self, user_id: int) -> Optional[Dict[str, Any]]:
        self._check("get_latest_form_record")
        for form in reversed(self.forms):
            if form["user_id"] == user_id:
                return form
        return None

    async def get_payment_event(self, payment_id: str) -> Optional[Dict[str, Any]]:
        self._check("get_payment_event")
        return self.payment_events.get(payment_id)

    async def insert_payment_event_if_absent(self, payment_id: str, record: Dict[str, Any]) -> bool:
        self._check("insert_payment_event_if_absent")
        if payment_id in self.payment_events:
            return False
        self.payment_events[payment_id] = {**record, "payment_id": payment_id}
        return True

    async def update_payment_event(self, payment_id: str, fields: Dict[str, Any]) -> bool:
        self._check("update_payment_event")
        if payment_id not in self.payment_events:
            return False
        self.payment_events[payment_id].update(fields)
        return True

    async def delete_payment_event(self, payment_id: str) -> bool:
        self._check("delete_payment_event")
        return self.payment_events.pop(payment_id, None) is not None


class FakeMessenger:
    """Records sent messages; chats in `unreachable` raise DeliveryError."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.unreachable = set()

    async def send_message(self, chat_id: int, text: str) -> Dict[str, Any]:
        if chat_id in self.unreachable:
            raise DeliveryError(f"Could not deliver message to {chat_id}: blocked")
        self.sent.append((chat_id, text))
        return {"message_id": len(self.sent)}

    def texts_for(self, chat_id: int) -> List[str]:
        return [text for sent_to, text in self.sent if sent_to == chat_id]


class FakeGateway:
    """Payment gateway double: canned lookups and recorded checkouts."""

    def __init__(self):
        self.payments: Dict[str, Any] = {}
        self.lookups: List[str] = []
        self.checkouts: List[Dict[str, Any]] = []
        self.checkout_error: Optional[Exception] = None

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        self.lookups.append(payment_id)
        await asyncio.sleep(0)
        result = self.payments[payment_id]
        if isinstance(result, Exception):
            raise result
        return result

    async def create_checkout(self, items, metadata) -> str:
        if self.checkout_error is not None:
            raise self.checkout_error
        self.checkouts.append({"items": items, "metadata": metadata})
        return f"https://pay.example/checkout/{len(self.checkouts)}"


class FakeProvider:
    """Membership provider double with configurable failures."""

    def __init__(self, add_error: Optional[ProviderError] = None, invite_error: Optional[ProviderError] = None):
        self.add_error = add_error
        self.invite_error = invite_error
        self.added: List[tuple] = []
        self.invites: List[Dict[str, Any]] = []

    async def add_member(self, group_id: int, user_id: int):
        self.added.append((group_id, user_id))
        if self.add_error is not None:
            raise self.add_error

    async def create_invite_link(self, group_id, member_limit=1, expire_date=None, name=None) -> str:
        if self.invite_error is not None:
            raise self.invite_error
        self.invites.append({
            "group_id": group_id,
            "member_limit": member_limit,
            "expire_date": expire_date,
            "name": name,
        })
        return f"https://t.me/+invite{len(self.invites)}"


def approved_payment(payment_id: str = "pay-1", user_id: int = 42, **overrides) -> PaymentInfo:
    data = {
        "id": payment_id,
        "status": "approved",
        "metadata": {
            "telegram_user_id": user_id,
            "name": "Ana Souza",
            "email": "ana@example.com",
            "phone": "+55 11 91234-5678",
        },
        "transaction_amount": 29.90,
        "currency_id": "BRL",
    }
    data.update(overrides)
    return PaymentInfo(**data)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_payment():
    return approved_payment


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
