"""
Chat Sync Core Echo Reconciler Tests
"""

from models.message import Direction, MessageStatus
from schemas.api import MessagePayload
from services.echo_reconciler import EchoOutcome, EchoReconciler
from tests.conftest import at, make_message


def echo(provider_id, content="Hola", seconds=0.0, **extra):
    data = {"provider_message_id": provider_id, "content": content, "timestamp": at(seconds).isoformat()}
    data.update(extra)
    return MessagePayload.model_validate(data)


def pending(store, message_id="temp_1", content="Hola", seconds=0.0, status=MessageStatus.SENDING):
    return store.append(make_message(
        message_id, direction=Direction.OUTBOUND, status=status, content=content, seconds=seconds
    ))


class TestSoftMatch:

    def test_echo_within_window_is_reconciled(self, store):
        pending(store)
        reconciler = EchoReconciler(store, match_window_ms=1000)

        message, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=0.5))

        assert outcome == EchoOutcome.SOFT
        ordered = store.list_ordered("conv-1")
        assert len(ordered) == 1
        assert ordered[0].provider_message_id == "abc123"
        assert ordered[0].status == MessageStatus.SENT
        assert message.id == "temp_1"

    def test_echo_outside_window_is_appended(self, store):
        pending(store)
        reconciler = EchoReconciler(store, match_window_ms=1000)

        _, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=2))

        assert outcome == EchoOutcome.NEW
        assert len(store.list_ordered("conv-1")) == 2

    def test_different_content_is_not_matched(self, store):
        pending(store, content="Hola")
        reconciler = EchoReconciler(store)

        _, outcome = reconciler.reconcile("conv-1", echo("abc123", content="Adios", seconds=0.1))

        assert outcome == EchoOutcome.NEW

    def test_closest_timestamp_wins(self, store):
        pending(store, "temp_far", seconds=0.0)
        pending(store, "temp_near", seconds=0.8)
        reconciler = EchoReconciler(store)

        message, _ = reconciler.reconcile("conv-1", echo("abc123", seconds=0.9))

        assert message.id == "temp_near"
        assert store.get("temp_far").provider_message_id is None

    def test_confirmed_messages_are_not_candidates(self, store):
        store.append(make_message(
            "srv-1", direction=Direction.OUTBOUND, content="Hola", provider_message_id="wamid.other"
        ))
        reconciler = EchoReconciler(store)

        _, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=0.1))

        assert outcome == EchoOutcome.NEW

    def test_drafting_messages_are_not_candidates(self, store):
        pending(store, status=MessageStatus.DRAFTING)
        reconciler = EchoReconciler(store)

        _, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=0.1))

        assert outcome == EchoOutcome.NEW

    def test_echo_rescues_a_timed_out_send(self, store):
        pending(store, status=MessageStatus.FAILED)
        reconciler = EchoReconciler(store)

        message, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=0.3))

        assert outcome == EchoOutcome.SOFT
        assert message.status == MessageStatus.SENT


class TestExactMatch:

    def test_duplicate_echo_is_idempotent(self, store):
        pending(store)
        reconciler = EchoReconciler(store)

        reconciler.reconcile("conv-1", echo("abc123", seconds=0.2))
        _, outcome = reconciler.reconcile("conv-1", echo("abc123", seconds=0.2))

        assert outcome == EchoOutcome.EXACT
        assert len(store.list_ordered("conv-1")) == 1

    def test_echo_does_not_regress_status(self, store):
        store.append(make_message(
            "srv-1", direction=Direction.OUTBOUND, status=MessageStatus.READ, provider_message_id="abc123"
        ))
        reconciler = EchoReconciler(store)

        message, outcome = reconciler.reconcile("conv-1", echo("abc123"))

        assert outcome == EchoOutcome.EXACT
        assert message.status == MessageStatus.READ

    def test_echo_id_used_as_provider_id(self, store):
        reconciler = EchoReconciler(store)
        payload = MessagePayload.model_validate({"id": "wamid.X", "text": "from phone", "timestamp": at().isoformat()})

        message, outcome = reconciler.reconcile("conv-1", payload)

        assert outcome == EchoOutcome.NEW
        assert message.provider_message_id == "wamid.X"
        assert message.direction == Direction.OUTBOUND
        assert message.timestamp == at()
