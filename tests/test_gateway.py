import pytest

from realtime.errors import AuthenticationFailure, ValidationFailure
from realtime.gateway import Gateway
from realtime.registry import ConnectionRegistry

from conftest import FailingTransport, fake_verifier


@pytest.fixture
def people(store):
    alice = store.add_user("alice")
    bob = store.add_user("bob")
    carol = store.add_user("carol")
    chat = store.add_chat(alice, bob)
    return alice, bob, carol, chat


def _connect(gateway, sid, user_id):
    return gateway.connect(sid, {"token": f"tok:{user_id}"}, {})


def _status_events(transport, sid):
    return transport.events_for(sid, "user_status_changed")


class TestConnectDisconnect:
    def test_first_connection_announces_online(self, gateway, transport, people):
        alice, bob, _, _ = people
        _connect(gateway, "sb", bob)
        transport.clear()

        _connect(gateway, "sa", alice)

        events = _status_events(transport, "sb")
        assert len(events) == 1
        assert events[0]["userId"] == alice
        assert events[0]["isOnline"] is True
        assert gateway.registry.is_online(alice)

    def test_reconnect_does_not_announce_again(self, gateway, transport, people):
        alice, bob, _, _ = people
        _connect(gateway, "sb", bob)
        _connect(gateway, "sa1", alice)
        transport.clear()

        _connect(gateway, "sa2", alice)

        assert _status_events(transport, "sb") == []
        assert gateway.registry.lookup(alice).connection_id == "sa2"

    def test_stale_disconnect_keeps_user_online(self, gateway, transport, people):
        alice, bob, _, _ = people
        _connect(gateway, "sb", bob)
        _connect(gateway, "sa1", alice)
        _connect(gateway, "sa2", alice)
        transport.clear()

        gateway.disconnect("sa1")

        assert gateway.registry.is_online(alice)
        assert _status_events(transport, "sb") == []

    def test_disconnect_scenario(self, gateway, transport, store, people):
        alice, bob, carol, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        _connect(gateway, "sc", carol)
        gateway.join_room("sa", {"roomId": chat})
        gateway.join_room("sa", {"roomId": "lobby"})
        transport.clear()

        gateway.disconnect("sa")

        assert not gateway.registry.is_online(alice)
        assert "sa" not in gateway.router.members(chat)
        assert "sa" not in gateway.router.members("lobby")
        for sid in ("sb", "sc"):
            events = _status_events(transport, sid)
            assert len(events) == 1
            assert events[0] == {"userId": alice, "isOnline": False, "lastSeen": events[0]["lastSeen"]}
        assert store.statuses[-1][:2] == (alice, False)

    def test_unknown_disconnect_is_ignored(self, gateway, transport):
        assert gateway.disconnect("never-seen") is None
        assert transport.sent == []

    def test_refused_connection_leaves_no_trace(self, gateway, transport):
        with pytest.raises(AuthenticationFailure):
            gateway.connect("sx", {"token": "garbage"}, {})
        assert gateway.connection_count() == 0
        assert transport.sent == []


class TestRooms:
    def test_join_then_leave_restores_membership(self, gateway, people):
        alice, _, _, chat = people
        _connect(gateway, "sa", alice)
        before = gateway.router.members(chat)

        assert gateway.join_room("sa", {"roomId": chat}) == {"success": True, "roomId": chat}
        gateway.leave_room("sa", {"roomId": chat})

        assert gateway.router.members(chat) == before

    def test_legacy_chat_id_key(self, gateway, people):
        alice, _, _, chat = people
        _connect(gateway, "sa", alice)
        gateway.join_room("sa", {"chatId": chat})
        assert gateway.router.members(chat) == {"sa"}

    @pytest.mark.parametrize("payload", [None, {}, {"roomId": ""}, {"roomId": ["r"]}, {"roomId": "x" * 129}, "r1"])
    def test_bad_room_id(self, gateway, people, payload):
        _connect(gateway, "sa", people[0])
        with pytest.raises(ValidationFailure) as info:
            gateway.join_room("sa", payload)
        assert info.value.code == "bad_room_id"

    def test_event_from_unknown_connection(self, gateway):
        with pytest.raises(ValidationFailure) as info:
            gateway.join_room("ghost", {"roomId": "r1"})
        assert info.value.code == "not_connected"


class TestTypingAndReceipts:
    def test_typing_is_relayed_to_others_only(self, gateway, transport, people):
        alice, bob, _, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        gateway.join_room("sa", {"roomId": chat})
        gateway.join_room("sb", {"roomId": chat})
        transport.clear()

        gateway.typing("sa", {"roomId": chat}, True)
        gateway.typing("sa", {"roomId": chat}, False)

        assert transport.events_for("sa") == []
        assert transport.events_for("sb", "typing_started") == [
            {"userId": alice, "roomId": chat, "username": "alice"}
        ]
        assert len(transport.events_for("sb", "typing_stopped")) == 1

    def test_message_read_scenario(self, gateway, transport, store, people):
        alice, bob, _, chat = people
        msg = store.store_message(chat, bob, "hi")
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        gateway.join_room("sa", {"roomId": chat})
        gateway.join_room("sb", {"roomId": chat})
        transport.clear()

        ack = gateway.message_read("sa", {"roomId": chat, "messageId": msg["id"]})

        assert ack == {"success": True}
        assert transport.events_for("sa") == []
        relayed = transport.events_for("sb", "message_read")
        assert len(relayed) == 1
        assert relayed[0]["messageId"] == msg["id"]
        assert relayed[0]["userId"] == alice
        assert relayed[0]["username"] == "alice"
        assert store.reads == [(msg["id"], chat, alice)]

    def test_message_read_of_unknown_message(self, gateway, transport, people):
        alice, bob, _, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        gateway.join_room("sb", {"roomId": chat})
        transport.clear()

        ack = gateway.message_read("sa", {"roomId": chat, "messageId": "missing"})

        assert ack == {"success": False, "error": "not_found"}
        assert transport.sent == []

    def test_message_read_still_relays_when_store_is_down(self, gateway, transport, store, people):
        alice, bob, _, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        gateway.join_room("sb", {"roomId": chat})
        store.failing.add("mark_read")
        transport.clear()

        ack = gateway.message_read("sa", {"roomId": chat, "messageId": "m1"})

        assert ack == {"success": True}
        assert len(transport.events_for("sb", "message_read")) == 1

    def test_message_read_requires_message_id(self, gateway, people):
        _connect(gateway, "sa", people[0])
        with pytest.raises(ValidationFailure) as info:
            gateway.message_read("sa", {"roomId": people[3]})
        assert info.value.code == "bad_message_id"

    @pytest.mark.parametrize("message_id", [{"id": "m1"}, ["m1"], True, "", "x" * 129])
    def test_message_read_rejects_malformed_message_id(self, gateway, transport, store, people, message_id):
        _connect(gateway, "sa", people[0])
        transport.clear()
        with pytest.raises(ValidationFailure) as info:
            gateway.message_read("sa", {"roomId": people[3], "messageId": message_id})
        assert info.value.code == "bad_message_id"
        assert store.reads == []
        assert transport.sent == []

    def test_message_read_accepts_numeric_message_id(self, gateway, people):
        _connect(gateway, "sa", people[0])
        ack = gateway.message_read("sa", {"roomId": people[3], "messageId": 0})
        assert ack == {"success": False, "error": "not_found"}


class TestSendMessage:
    def test_participants_get_new_message_and_room_gets_receipt(self, gateway, transport, store, people):
        alice, bob, carol, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        _connect(gateway, "sc", carol)
        gateway.join_room("sa", {"roomId": chat})
        gateway.join_room("sc", {"roomId": chat})
        transport.clear()

        ack = gateway.send_message("sa", {"roomId": chat, "content": "hello"})

        assert ack["success"] is True
        assert ack["persisted"] is True
        message = ack["message"]
        assert message["content"] == "hello"
        assert message["senderId"] == alice

        # Bob is a participant but never joined the room.
        assert transport.events_for("sb", "new_message") == [{"message": message, "roomId": chat}]
        assert transport.events_for("sa", "new_message") == []
        # Carol joined the room but is not a participant.
        assert transport.events_for("sc", "new_message") == []

        receipts = {cid for cid, ev, _ in transport.sent if ev == "message_delivered"}
        assert receipts == {"sa", "sc"}

    def test_non_participant_is_refused(self, gateway, transport, store, people):
        _, _, carol, chat = people
        _connect(gateway, "sc", carol)
        transport.clear()

        ack = gateway.send_message("sc", {"roomId": chat, "content": "let me in"})

        assert ack == {"success": False, "error": "not_a_participant"}
        assert store.rows == {}
        assert transport.sent == []

    def test_store_down_during_authorization(self, gateway, store, people):
        alice, _, _, chat = people
        _connect(gateway, "sa", alice)
        store.failing.add("is_participant")
        assert gateway.send_message("sa", {"roomId": chat, "content": "x"}) == {
            "success": False,
            "error": "store_unavailable",
        }

    def test_unpersisted_message_is_still_delivered(self, gateway, transport, store, people):
        alice, bob, _, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        store.failing.add("store_message")
        transport.clear()

        ack = gateway.send_message("sa", {"roomId": chat, "content": "hello"})

        assert ack["success"] is True
        assert ack["persisted"] is False
        assert ack["message"]["persisted"] is False
        assert len(transport.events_for("sb", "new_message")) == 1

    def test_participant_lookup_failure_falls_back_to_room(self, gateway, transport, store, people):
        alice, bob, _, chat = people
        _connect(gateway, "sa", alice)
        _connect(gateway, "sb", bob)
        gateway.join_room("sa", {"roomId": chat})
        gateway.join_room("sb", {"roomId": chat})
        store.failing.add("get_participants")
        transport.clear()

        gateway.send_message("sa", {"roomId": chat, "content": "hello"})

        assert len(transport.events_for("sb", "new_message")) == 1
        assert transport.events_for("sa", "new_message") == []

    @pytest.mark.parametrize(
        "payload,code",
        [
            ({"content": ""}, "empty_content"),
            ({"content": "   "}, "empty_content"),
            ({"content": 5}, "empty_content"),
            ({"content": "x" * 4001}, "content_too_long"),
            ({"content": "hi", "type": "sticker"}, "bad_message_type"),
        ],
    )
    def test_content_validation(self, gateway, people, payload, code):
        _connect(gateway, "sa", people[0])
        with pytest.raises(ValidationFailure) as info:
            gateway.send_message("sa", dict(payload, roomId=people[3]))
        assert info.value.code == code


def test_failing_recipient_does_not_block_others(store, people):
    alice, bob, carol, chat = people
    store.chats[chat].append(carol)
    transport = FailingTransport(broken={"sb"})
    gw = Gateway(store, transport, registry=ConnectionRegistry(), verifier=fake_verifier)
    for sid, uid in (("sa", alice), ("sb", bob), ("sc", carol)):
        _connect(gw, sid, uid)
    transport.clear()

    ack = gw.send_message("sa", {"roomId": chat, "content": "hello"})

    assert ack["success"] is True
    assert len(transport.events_for("sc", "new_message")) == 1


def test_send_notification_to_offline_user_is_a_noop(gateway, transport):
    assert gateway.send_notification("nobody", {"title": "hi"}) is False
    assert transport.sent == []


def test_send_notification_to_online_user(gateway, transport, people):
    alice = people[0]
    _connect(gateway, "sa", alice)
    transport.clear()
    assert gateway.send_notification(alice, {"title": "hi"}) is True
    assert transport.sent == [("sa", "notification", {"title": "hi"})]


def test_online_users_listing(gateway, people):
    alice, bob, _, _ = people
    _connect(gateway, "sa", alice)
    _connect(gateway, "sb", bob)
    users = {u["userId"]: u for u in gateway.online_users()}
    assert set(users) == {alice, bob}
    assert users[alice]["socketId"] == "sa"
    assert gateway.connection_count() == 2
