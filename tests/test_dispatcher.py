# tests/test_dispatcher.py
"""Tests for command routing, intake replies and payment link issuing."""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import PaymentGatewayError
from app.flow.dispatcher import MessageDispatcher
from app.flow.engine import ConversationEngine
from app.schemas.webhook import InboundMessage
from app.services.session_store import SessionStore
from utils.constants import (
    ALREADY_SUBSCRIBED_MESSAGE,
    COMMAND_IGNORED_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    HELP_MESSAGE,
    NO_ACTIVE_SESSION_MESSAGE,
    PAY_WITHOUT_FORM_MESSAGE,
    PAYMENT_LINK_FAILED_MESSAGE,
    PAYMENT_LINK_MESSAGE,
    SESSION_CANCELLED_MESSAGE,
    SESSION_CONFLICT_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    WELCOME_MESSAGE,
)

USER = 42


def build(repository, gateway, messenger, timeout=timedelta(minutes=5)):
    engine = ConversationEngine(SessionStore(timeout), repository)
    return MessageDispatcher(engine, repository, gateway, messenger)


@pytest.fixture
def dispatcher(repository, gateway, messenger):
    return build(repository, gateway, messenger)


def say(dispatcher, *texts):
    async def run():
        for text in texts:
            await dispatcher.dispatch(InboundMessage(chat_id=USER, user_id=USER, text=text))
    return run()


def test_start_opens_intake(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "/start"))

    texts = messenger.texts_for(USER)
    assert len(texts) == 1
    assert WELCOME_MESSAGE in texts[0]


def test_start_for_active_subscriber(event_loop, dispatcher, repository, messenger):
    repository.users[USER] = {"user_id": USER, "status": "active"}

    event_loop.run_until_complete(say(dispatcher, "/start"))

    assert messenger.texts_for(USER) == [ALREADY_SUBSCRIBED_MESSAGE]
    assert dispatcher.engine.store.get(USER) is None


def test_start_twice(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "/start", "/start"))

    assert messenger.texts_for(USER)[-1] == SESSION_CONFLICT_MESSAGE


def test_completed_form_issues_payment_link(event_loop, dispatcher, gateway, messenger):
    event_loop.run_until_complete(
        say(dispatcher, "/start", " Ana Souza ", "ana@example.com", "+55 11 91234-5678")
    )

    texts = messenger.texts_for(USER)
    assert texts[-1] == PAYMENT_LINK_MESSAGE.format(link="https://pay.example/checkout/1")
    assert "Ana Souza" in texts[-2]

    metadata = gateway.checkouts[0]["metadata"]
    assert metadata == {
        "telegram_user_id": USER,
        "name": "Ana Souza",
        "email": "ana@example.com",
        "phone": "+55 11 91234-5678",
    }


def test_checkout_failure_tells_user_to_retry(event_loop, dispatcher, gateway, messenger):
    gateway.checkout_error = PaymentGatewayError("Payment gateway timed out")

    event_loop.run_until_complete(
        say(dispatcher, "/start", "Ana", "ana@example.com", "+5511912345678")
    )

    assert messenger.texts_for(USER)[-1] == PAYMENT_LINK_FAILED_MESSAGE


def test_pay_reissues_link_from_latest_form(event_loop, dispatcher, repository, gateway, messenger):
    repository.forms.append({"user_id": USER, "name": "Old", "email": "old@example.com", "phone": "+5511900000000"})
    repository.forms.append({"user_id": USER, "name": "Ana", "email": "ana@example.com", "phone": "+5511912345678"})

    event_loop.run_until_complete(say(dispatcher, "/pay"))

    assert messenger.texts_for(USER) == [PAYMENT_LINK_MESSAGE.format(link="https://pay.example/checkout/1")]
    assert gateway.checkouts[0]["metadata"]["name"] == "Ana"


def test_pay_without_form(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "/pay"))

    assert messenger.texts_for(USER) == [PAY_WITHOUT_FORM_MESSAGE]


def test_pay_for_active_subscriber(event_loop, dispatcher, repository, gateway, messenger):
    repository.users[USER] = {"user_id": USER, "status": "active"}
    repository.forms.append({"user_id": USER, "name": "Ana", "email": "ana@example.com", "phone": "+5511912345678"})

    event_loop.run_until_complete(say(dispatcher, "/pay"))

    assert messenger.texts_for(USER) == [ALREADY_SUBSCRIBED_MESSAGE]
    assert gateway.checkouts == []


def test_commands_during_intake_are_ignored(event_loop, dispatcher, gateway, messenger):
    event_loop.run_until_complete(say(dispatcher, "/start", "/pay", "/help"))

    texts = messenger.texts_for(USER)
    assert texts[1:] == [COMMAND_IGNORED_MESSAGE, COMMAND_IGNORED_MESSAGE]
    assert gateway.checkouts == []


def test_help_outside_intake(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "/help"))

    assert messenger.texts_for(USER) == [HELP_MESSAGE]


def test_text_without_session(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "hello"))

    assert messenger.texts_for(USER) == [NO_ACTIVE_SESSION_MESSAGE]


def test_cancel_then_late_input(event_loop, dispatcher, messenger):
    event_loop.run_until_complete(say(dispatcher, "/start", "/cancel", "Ana"))

    assert messenger.texts_for(USER)[1:] == [SESSION_CANCELLED_MESSAGE, SESSION_CANCELLED_MESSAGE]


def test_expired_session_notifies_user(event_loop, repository, gateway, messenger):
    dispatcher = build(repository, gateway, messenger, timeout=timedelta(milliseconds=50))

    async def run():
        await say(dispatcher, "/start")
        await asyncio.sleep(0.2)
        await say(dispatcher, "Ana")

    event_loop.run_until_complete(run())

    texts = messenger.texts_for(USER)
    assert texts[1:] == [SESSION_EXPIRED_MESSAGE, SESSION_EXPIRED_MESSAGE]


def test_undeliverable_reply_does_not_raise(event_loop, dispatcher, messenger):
    messenger.unreachable.add(USER)

    result = event_loop.run_until_complete(
        dispatcher.dispatch(InboundMessage(chat_id=USER, user_id=USER, text="/help"))
    )
    assert result["status"] == "success"


def test_storage_outage_gets_generic_reply(event_loop, dispatcher, repository, messenger):
    repository.failing.add("get_user")

    event_loop.run_until_complete(say(dispatcher, "/start"))

    assert messenger.texts_for(USER) == [GENERIC_ERROR_MESSAGE]
