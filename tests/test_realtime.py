import pytest
from fastapi import WebSocketDisconnect

from models import Profile
from websocket_manager import ConnectionManager, messages_channel


class FakeSocket:
    def __init__(self, fail=False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.mark.asyncio
async def test_connect_announces_connection():
    manager = ConnectionManager()
    socket = FakeSocket()

    await manager.connect(socket, "user-1")

    assert socket.accepted
    assert socket.sent[0]["type"] == "connection_established"
    assert manager.get_connection_count() == 1
    assert manager.get_connected_users() == ["user-1"]


@pytest.mark.asyncio
async def test_publish_reaches_only_subscribers():
    manager = ConnectionManager()
    listener, bystander = FakeSocket(), FakeSocket()
    await manager.connect(listener, "user-1")
    await manager.connect(bystander, "user-2")
    manager.subscribe(listener, messages_channel("conv-1"))

    await manager.broadcast_new_message({"conversation_id": "conv-1", "content": "Hello"})

    event = listener.sent[-1]
    assert event["type"] == "message_inserted"
    assert event["channel"] == "messages:conv-1"
    assert event["data"]["content"] == "Hello"
    assert len(bystander.sent) == 1


@pytest.mark.asyncio
async def test_profile_updates_fan_out_by_user_type():
    manager = ConnectionManager()
    admin_socket, investor_socket = FakeSocket(), FakeSocket()
    await manager.connect(admin_socket, "admin")
    await manager.connect(investor_socket, "investor")
    manager.subscribe(admin_socket, "profiles")
    manager.subscribe(investor_socket, "institutions")

    pending = {"id": "p-1", "email": "p1@donormatch.org", "user_type": "institution",
               "verification_status": "pending"}
    verified = dict(pending, id="p-2", email="p2@donormatch.org", verification_status="verified")
    await manager.broadcast_profile_updated(pending)
    await manager.broadcast_profile_updated(verified)
    await manager.broadcast_profile_updated(dict(verified, verification_status="rejected"), was_listed=True)

    assert [e["data"]["id"] for e in admin_socket.sent[1:]] == ["p-1", "p-2", "p-2"]
    assert admin_socket.sent[1]["data"]["email"] == "p1@donormatch.org"

    directory_events = investor_socket.sent[1:]
    assert [e["type"] for e in directory_events] == ["institution_changed", "institution_changed"]
    assert directory_events[0]["data"] == {
        "user_id": "p-2", "user_type": "institution", "verification_status": "verified",
    }
    assert directory_events[1]["data"]["verification_status"] == "rejected"


@pytest.mark.asyncio
async def test_revoke_subscriptions_keeps_allowed_channels():
    manager = ConnectionManager()
    phone, laptop, other = FakeSocket(), FakeSocket(), FakeSocket()
    await manager.connect(phone, "user-1")
    await manager.connect(laptop, "user-1")
    await manager.connect(other, "user-2")
    for socket in (phone, laptop, other):
        manager.subscribe(socket, "messages:conv-1")
    manager.subscribe(laptop, "institutions")

    revoked = await manager.revoke_subscriptions("user-1", lambda channel: channel == "institutions")

    assert revoked == ["messages:conv-1"]
    assert manager.subscriptions["messages:conv-1"] == {other}
    assert manager.subscriptions["institutions"] == {laptop}
    assert phone.sent[-1] == {"type": "subscription_revoked", "channel": "messages:conv-1"}
    assert laptop.sent[-1] == {"type": "subscription_revoked", "channel": "messages:conv-1"}
    assert len(other.sent) == 1


@pytest.mark.asyncio
async def test_failed_sockets_are_dropped():
    manager = ConnectionManager()
    healthy = FakeSocket()
    await manager.connect(healthy, "user-1")
    broken = FakeSocket()
    await manager.connect(broken, "user-2")
    broken.fail = True
    manager.subscribe(healthy, "donations")
    manager.subscribe(broken, "donations")

    await manager.broadcast_donation_changed({"id": "d-1"})

    assert manager.subscriber_count("donations") == 1
    assert manager.get_connected_users() == ["user-1"]


@pytest.mark.asyncio
async def test_disconnect_clears_subscriptions():
    manager = ConnectionManager()
    socket = FakeSocket()
    await manager.connect(socket, "user-1")
    manager.subscribe(socket, "institutions")
    manager.subscribe(socket, messages_channel("conv-1"))

    manager.disconnect(socket, "user-1")

    assert manager.subscriptions == {}
    assert manager.get_connection_count() == 0


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=not-a-token") as ws:
            ws.receive_json()


def test_websocket_ping_and_subscriptions(client, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    conversation = client.post("/api/conversations", headers=investor.headers,
                               json={"partner_id": institution.entity_id}).json()

    with client.websocket_connect(f"/ws?token={investor.token}") as ws:
        assert ws.receive_json()["type"] == "connection_established"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "subscribe", "channel": f"messages:{conversation['id']}"})
        assert ws.receive_json() == {"type": "subscribed", "channel": f"messages:{conversation['id']}"}

        ws.send_json({"type": "subscribe", "channel": "profiles"})
        denied = ws.receive_json()
        assert denied["type"] == "error"
        assert denied["channel"] == "profiles"

        ws.send_json({"type": "unsubscribe", "channel": "institutions"})
        assert ws.receive_json()["type"] == "unsubscribed"

        ws.send_json({"type": "dance"})
        assert ws.receive_json()["type"] == "error"


def test_losing_verification_ends_message_feed(client, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    admin = make_account("admin", register=False)
    conversation_id = client.post("/api/conversations", headers=investor.headers,
                                  json={"partner_id": institution.entity_id}).json()["id"]
    channel = f"messages:{conversation_id}"

    with client.websocket_connect(f"/ws?token={investor.token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "channel": channel})
        assert ws.receive_json()["type"] == "subscribed"

        r = client.put(f"/api/admin/profiles/{investor.id}/verification",
                       headers=admin.headers, json={"status": "rejected"})
        assert r.status_code == 200
        assert ws.receive_json() == {"type": "subscription_revoked", "channel": channel}

        r = client.post(f"/api/conversations/{conversation_id}/messages",
                        headers=institution.headers, json={"content": "Updated terms attached"})
        assert r.status_code == 201

        # Nothing was queued for the message; the next frame answers the ping
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "subscribe", "channel": channel})
        assert ws.receive_json()["type"] == "error"


def test_directory_feed_never_carries_emails(client, make_account):
    investor = make_account("investor")
    admin = make_account("admin", register=False)

    with client.websocket_connect(f"/ws?token={investor.token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "channel": "institutions"})
        assert ws.receive_json()["type"] == "subscribed"

        signup = client.post("/api/auth/signup", json={
            "email": "newschool@donormatch.org", "password": "longenough", "user_type": "institution",
        })
        assert signup.status_code == 201
        new_id = client.get("/api/auth/me", headers={
            "Authorization": f"Bearer {signup.json()['access_token']}"
        }).json()["id"]

        client.put(f"/api/admin/profiles/{new_id}/verification",
                   headers=admin.headers, json={"status": "verified"})

        # The pending signup published nothing here; the first event is the verification
        event = ws.receive_json()
        assert event["type"] == "institution_changed"
        assert event["data"] == {
            "user_id": new_id, "user_type": "institution", "verification_status": "verified",
        }
        assert "newschool@donormatch.org" not in str(event)


def test_channel_checks_read_current_status(db, make_account):
    from main import _authorize_channel, _token_user_id

    investor = make_account("investor")
    admin = make_account("admin", register=False)

    assert _token_user_id(investor.token) == investor.id
    assert _token_user_id("not-a-token") is None
    assert _authorize_channel(investor.id, "institutions")
    assert not _authorize_channel(investor.id, "profiles")
    assert _authorize_channel(admin.id, "profiles")

    profile = db.get(Profile, investor.id)
    profile.verification_status = "pending"
    db.commit()

    assert not _authorize_channel(investor.id, "institutions")
