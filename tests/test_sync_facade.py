"""
Chat Sync Core Facade Tests
End-to-end flows through the UI-facing API
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from error_handling import ProviderAPIError
from error_messages import ConversationErrors, MessageErrors
from models.conversation import Conversation
from models.message import Direction, MessageStatus
from schemas.api import SendResult
from schemas.events import parse_event
from services.realtime_transport import ConnectionState, RealtimeTransport
from services.sync_facade import SyncFacade
from tests.conftest import make_message
from utils.timestamps import to_utc_iso, utcnow


def new_message_event(conversation_id, provider_id, text="hola", **message):
    message.update({"messageId": provider_id, "text": text})
    return parse_event("new_message", {"conversation_id": conversation_id, "message": message})


def echo_event(conversation_id, provider_id, text, timestamp=None):
    return parse_event("message_echo", {
        "conversation_id": conversation_id,
        "message": {"messageId": provider_id, "text": text, "timestamp": timestamp or to_utc_iso(utcnow())},
    })


def status_event(identifier, status):
    return parse_event("delivery_status", {"messageId": identifier, "status": status})


class TestSendFlows:

    @pytest.mark.asyncio
    async def test_send_is_visible_before_network_resolves(self, facade, fake_api):
        gate = asyncio.Event()

        async def _slow_send(*args, **kwargs):
            await gate.wait()
            return SendResult(id="srv-1", provider_message_id="wamid.1")

        fake_api.send_message = _slow_send

        result = facade.send("346001", "Hola")

        ordered = facade.get_ordered_messages("346001")
        assert result.success
        assert len(ordered) == 1
        assert ordered[0].status == MessageStatus.SENDING
        assert ordered[0].content == "Hola"

        gate.set()
        await facade.drain()

        ordered = facade.get_ordered_messages("346001")
        assert len(ordered) == 1
        assert ordered[0].id == "srv-1"
        assert ordered[0].status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_send_then_echo_leaves_one_message(self, facade, fake_api):
        gate = asyncio.Event()

        async def _slow_send(*args, **kwargs):
            await gate.wait()
            return SendResult(id="abc123", provider_message_id="abc123")

        fake_api.send_message = _slow_send

        facade.send("346001", "Hola")
        facade.handle_event(echo_event("346001", "abc123", "Hola"))

        ordered = facade.get_ordered_messages("346001")
        assert len(ordered) == 1
        assert ordered[0].provider_message_id == "abc123"
        assert ordered[0].status == MessageStatus.SENT

        gate.set()
        await facade.drain()

        ordered = facade.get_ordered_messages("346001")
        assert len(ordered) == 1
        assert ordered[0].provider_message_id == "abc123"
        assert ordered[0].status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_delivered_then_read(self, facade, fake_api):
        facade.send("346001", "Hola")
        await facade.drain()

        facade.handle_event(status_event("wamid.1", "delivered"))
        assert facade.get_ordered_messages("346001")[0].status == MessageStatus.DELIVERED

        facade.handle_event(status_event("wamid.1", "read"))
        facade.handle_event(status_event("wamid.1", "delivered"))
        assert facade.get_ordered_messages("346001")[0].status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_failure_then_retry(self, facade, fake_api):
        fake_api.send_message.side_effect = [
            ProviderAPIError("provider down", status_code=503),
            SendResult(id="srv-7", provider_message_id="wamid.7"),
        ]

        sent = facade.send("346001", "Hola").data
        await facade.drain()

        failed = facade.get_ordered_messages("346001")
        assert [m.status for m in failed] == [MessageStatus.FAILED]
        assert failed[0].id == sent.id

        result = facade.retry(sent.id)
        assert result.success
        assert facade.get_ordered_messages("346001")[0].status == MessageStatus.SENDING
        await facade.drain()

        ordered = facade.get_ordered_messages("346001")
        assert len(ordered) == 1
        assert ordered[0].status == MessageStatus.SENT
        assert ordered[0].id == "srv-7"
        assert fake_api.send_message.await_count == 2
        # Same content resent
        assert fake_api.send_message.await_args_list[1].args[1] == "Hola"

    def test_retry_of_unknown_message_is_soft_failure(self, facade):
        result = facade.retry("missing")

        assert not result.success
        assert result.error == MessageErrors.NOT_FOUND

    @pytest.mark.asyncio
    async def test_retry_of_sent_message_is_refused(self, facade):
        sent = facade.send("346001", "Hola").data
        await facade.drain()

        result = facade.retry(sent.id)

        assert result.error == MessageErrors.NOT_FOUND
        assert facade.retry("srv-1").error == MessageErrors.NOT_RETRYABLE

    def test_empty_message_is_rejected(self, facade):
        result = facade.send("346001", "   ")

        assert result.error == MessageErrors.EMPTY_CONTENT
        assert facade.get_ordered_messages("346001") == []

    @pytest.mark.asyncio
    async def test_template_variables_are_replaced(self, facade, fake_api):
        facade.index.apply_server_list([
            Conversation(id="346001", phone="346001", display_name="Ana", email="ana@example.com"),
        ])

        facade.send("346001", "Hola {{1}}, te escribimos a {{email}} {{unknown}}")
        await facade.drain()

        sent_text = fake_api.send_message.await_args.args[1]
        assert sent_text == "Hola Ana, te escribimos a ana@example.com {{unknown}}"

    @pytest.mark.asyncio
    async def test_send_resolution_applies_after_navigating_away(self, facade, fake_api):
        gate = asyncio.Event()

        async def _slow_send(*args, **kwargs):
            await gate.wait()
            return SendResult(id="srv-1", provider_message_id="wamid.1")

        fake_api.send_message = _slow_send
        facade.send("346001", "Hola")

        await facade.select_conversation("other")
        gate.set()
        await facade.drain()

        assert facade.get_ordered_messages("346001")[0].status == MessageStatus.SENT


class TestInbound:

    def test_inbound_to_inactive_conversation_counts_unread(self, facade):
        facade.handle_event(new_message_event("346001", "wamid.in1"))

        assert facade.get_conversation("346001").unread_count == 1

    def test_duplicate_delivery_counts_once(self, facade):
        event = new_message_event("346001", "wamid.in1")

        facade.handle_event(event)
        facade.handle_event(event)

        assert len(facade.get_ordered_messages("346001")) == 1
        assert facade.get_conversation("346001").unread_count == 1

    def test_inbound_without_any_id_is_dropped(self, facade):
        event = parse_event("new_message", {"conversation_id": "346001", "message": {"text": "no ids"}})

        facade.handle_event(event)
        facade.handle_event(event)

        assert facade.get_ordered_messages("346001") == []
        conversation = facade.get_conversation("346001")
        assert conversation is None or conversation.unread_count == 0

    def test_redelivered_message_with_only_local_id_counts_once(self, facade):
        event = parse_event("new_message", {"conversation_id": "346001", "message": {"id": 81, "text": "hi"}})

        facade.handle_event(event)
        facade.handle_event(event)

        assert len(facade.get_ordered_messages("346001")) == 1
        assert facade.get_conversation("346001").unread_count == 1

    @pytest.mark.asyncio
    async def test_inbound_to_active_conversation_stays_read(self, facade, fake_api):
        await facade.select_conversation("346001")

        facade.handle_event(new_message_event("346001", "wamid.in2"))
        await facade.drain()

        assert facade.get_conversation("346001").unread_count == 0
        fake_api.mark_read.assert_awaited()
        assert fake_api.mark_read.await_args.args[1] == ["wamid.in2"]

    def test_outbound_new_message_goes_through_echo_path(self, facade):
        facade.handle_event(new_message_event("346001", "wamid.out", text="from phone", sender="agent"))

        ordered = facade.get_ordered_messages("346001")
        assert ordered[0].direction == Direction.OUTBOUND
        assert facade.get_conversation("346001").unread_count == 0

    def test_preview_follows_last_message(self, facade):
        facade.handle_event(new_message_event("346001", "wamid.in1", text="first"))
        facade.handle_event(new_message_event("346001", "wamid.in2", text="second"))

        assert facade.get_conversation("346001").last_message_preview == "second"

    def test_contact_update_renames(self, facade):
        facade.handle_event(new_message_event("346001", "wamid.in1"))
        facade.handle_event(parse_event("contact_updated", {"phone": "346001", "name": "Maria"}))

        assert facade.get_conversation("346001").display_name == "Maria"

    def test_events_for_phone_resolve_to_server_id(self, facade):
        facade.index.apply_server_list([Conversation(id="77", phone="+34 600 111", display_name="Ana")])

        facade.handle_event(new_message_event("+34600111", "wamid.in1"))

        assert len(facade.get_ordered_messages("77")) == 1
        assert facade.get_conversation("77").unread_count == 1


class TestSelection:

    @pytest.mark.asyncio
    async def test_select_loads_history_and_zeroes_unread(self, facade, fake_api):
        fake_api.fetch_messages.return_value = [
            make_message("1", conversation_id="346001", provider_message_id="wamid.h1", seconds=1),
            make_message("2", conversation_id="346001", provider_message_id="wamid.h2", seconds=2),
        ]
        facade.handle_event(new_message_event("346001", "wamid.in1"))

        result = await facade.select_conversation("346001")
        await facade.drain()

        assert result.success
        assert facade.active_conversation_id == "346001"
        assert facade.get_conversation("346001").unread_count == 0
        acked = {pid for call in fake_api.mark_read.await_args_list for pid in call.args[1]}
        assert {"wamid.h1", "wamid.h2"} <= acked

    @pytest.mark.asyncio
    async def test_history_failure_is_soft(self, facade, fake_api):
        fake_api.fetch_messages.side_effect = ConnectionError("offline")

        result = await facade.select_conversation("346001")

        assert not result.success
        assert result.error == ConversationErrors.HISTORY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failed_message_survives_forced_reload(self, facade, fake_api):
        fake_api.send_message.side_effect = ProviderAPIError("nope", status_code=400)
        facade.send("346001", "Hola")
        await facade.drain()

        fake_api.fetch_messages.return_value = [make_message("srv-1", conversation_id="346001")]
        await facade.load_history("346001", force_reload=True)

        statuses = {m.id: m.status for m in facade.get_ordered_messages("346001")}
        assert MessageStatus.FAILED in statuses.values()
        assert "srv-1" in statuses

    @pytest.mark.asyncio
    async def test_inbound_during_forced_reload_survives(self, facade, fake_api):
        gate = asyncio.Event()

        async def slow_fetch(conversation_id, page=1, limit=100):
            await gate.wait()
            return [make_message("1", conversation_id="346001", provider_message_id="wamid.h1", seconds=1)]

        fake_api.fetch_messages.side_effect = slow_fetch
        facade.handle_event(new_message_event("346001", "wamid.old"))

        reload = asyncio.create_task(facade.load_history("346001", force_reload=True))
        await asyncio.sleep(0)
        facade.handle_event(new_message_event("346001", "wamid.x", text="while loading"))
        gate.set()
        result = await reload

        assert result.success
        pids = [m.provider_message_id for m in facade.get_ordered_messages("346001")]
        assert "wamid.x" in pids
        assert "wamid.h1" in pids
        assert "wamid.old" not in pids

    @pytest.mark.asyncio
    async def test_select_unknown_phone_creates_new_conversation(self, facade, fake_api):
        result = await facade.select_conversation_by_phone("+34 600 999 000")

        assert result.success
        conversation = facade.get_conversation("+34600999000")
        assert conversation.is_new
        fake_api.fetch_messages.assert_not_awaited()

        facade.send("+34600999000", "Hola")
        await facade.drain()
        assert fake_api.send_message.await_args.kwargs["phone"] == "+34600999000"

    @pytest.mark.asyncio
    async def test_refresh_keeps_active_unread_at_zero(self, facade, fake_api):
        await facade.select_conversation("346001")
        fake_api.fetch_conversations.return_value = [
            Conversation(id="346001", phone="346001", display_name="Ana", unread_count=5),
            Conversation(id="346002", phone="346002", display_name="Ben", unread_count=2),
        ]

        await facade.refresh_conversations()

        assert facade.get_conversation("346001").unread_count == 0
        assert facade.get_conversation("346002").unread_count == 2

    @pytest.mark.asyncio
    async def test_refresh_failure_is_soft(self, facade, fake_api):
        fake_api.fetch_conversations.side_effect = ProviderAPIError("down", status_code=500)

        result = await facade.refresh_conversations()

        assert result.error == ConversationErrors.LIST_UNAVAILABLE


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_message_listeners_receive_snapshots(self, facade):
        snapshots = []
        facade.on_messages_changed("346001", snapshots.append)

        facade.send("346001", "Hola")
        await facade.drain()

        assert snapshots[0][0].status == MessageStatus.SENDING
        assert snapshots[-1][0].status == MessageStatus.SENT

    def test_conversation_listener_and_unsubscribe(self, facade):
        received = []
        remove = facade.on_conversations_changed(received.append)

        facade.handle_event(new_message_event("346001", "wamid.in1"))
        count = len(received)
        remove()
        facade.handle_event(new_message_event("346001", "wamid.in2"))

        assert count > 0
        assert len(received) == count

    def test_listener_errors_do_not_escape(self, facade):
        facade.on_messages_changed("346001", MagicMock(side_effect=RuntimeError("ui bug")))

        facade.handle_event(new_message_event("346001", "wamid.in1"))

        assert len(facade.get_ordered_messages("346001")) == 1

    def test_delete_message(self, facade):
        facade.handle_event(new_message_event("346001", "wamid.in1"))
        message_id = facade.get_ordered_messages("346001")[0].id

        assert facade.delete_message(message_id).success
        assert facade.get_ordered_messages("346001") == []
        assert facade.delete_message(message_id).error == MessageErrors.NOT_FOUND


class TestTransportWiring:

    @pytest.mark.asyncio
    async def test_connect_triggers_resync_and_connectivity(self, fake_api, settings):
        transport = RealtimeTransport("ws://test", reconnect_delay=10)
        facade = SyncFacade(fake_api, transport=transport, settings=settings)
        online = []
        facade.on_connectivity_changed(online.append)

        transport._set_state(ConnectionState.CONNECTING)
        transport._set_state(ConnectionState.CONNECTED)
        await facade.resync()
        assert facade.is_online
        transport._set_state(ConnectionState.DISCONNECTED)

        assert online == [True, False]
        assert not facade.is_online
        fake_api.fetch_conversations.assert_awaited()

    @pytest.mark.asyncio
    async def test_frames_flow_into_the_store(self, fake_api, settings):
        transport = RealtimeTransport("ws://test")
        facade = SyncFacade(fake_api, transport=transport, settings=settings)

        await transport.handle_frame({
            "event": "new_message",
            "data": {"conversationId": "346001", "message": {"messageId": "wamid.1", "text": "hola"}},
        })

        assert len(facade.get_ordered_messages("346001")) == 1

    @pytest.mark.asyncio
    async def test_start_without_transport_resyncs(self, facade, fake_api):
        await facade.start()
        await facade.stop()

        fake_api.fetch_conversations.assert_awaited_once()
        assert facade.connection_state == ConnectionState.DISCONNECTED

    def test_from_settings_wires_defaults(self, settings):
        facade = SyncFacade.from_settings(settings)

        assert facade.transport is not None
        assert facade.transport.url == settings.ws_url
        assert facade.api.base_url == settings.api_base_url
