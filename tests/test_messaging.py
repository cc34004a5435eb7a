from datetime import datetime

from models import Conversation


def _open(client, account, partner_id):
    return client.post("/api/conversations", headers=account.headers, json={"partner_id": partner_id})


def test_unverified_accounts_cannot_message(client, make_account):
    pending = make_account("investor", status="pending")

    assert client.get("/api/conversations", headers=pending.headers).status_code == 403
    assert client.get("/api/conversations/partners", headers=pending.headers).status_code == 403


def test_open_conversation_is_idempotent(client, make_account):
    institution = make_account("institution", name="Hillside School")
    investor = make_account("investor", name="Acme Corp", investor_type="corporate")

    first = _open(client, investor, institution.entity_id)
    assert first.status_code == 201
    assert first.json()["other_party_name"] == "Hillside School"
    assert first.json()["other_party_type"] == "institution"

    second = _open(client, investor, institution.entity_id)
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]

    # The institution opening the same pair lands on the same conversation
    third = _open(client, institution, investor.entity_id)
    assert third.status_code == 200
    assert third.json()["id"] == first.json()["id"]
    assert third.json()["other_party_name"] == "Acme Corp"


def test_cannot_open_with_unverified_partner(client, make_account):
    institution = make_account("institution")
    pending_investor = make_account("investor", status="pending")

    assert _open(client, institution, pending_investor.entity_id).status_code == 403
    assert _open(client, institution, "no-such-investor").status_code == 404


def test_send_and_list_messages(client, make_account, db):
    institution = make_account("institution")
    investor = make_account("investor")
    conversation_id = _open(client, investor, institution.entity_id).json()["id"]
    before = db.query(Conversation).filter(Conversation.id == conversation_id).one().updated_at
    db.expire_all()

    r = client.post(f"/api/conversations/{conversation_id}/messages",
                    headers=investor.headers, json={"content": "  Hello, we would like to help.  "})
    assert r.status_code == 201
    assert r.json()["content"] == "Hello, we would like to help."
    assert r.json()["sender_id"] == investor.id
    assert r.json()["sender_name"] == "Investor Person 2"
    assert r.json()["read"] is False

    client.post(f"/api/conversations/{conversation_id}/messages",
                headers=institution.headers, json={"content": "Thank you!"})

    r = client.get(f"/api/conversations/{conversation_id}/messages", headers=institution.headers)
    assert r.status_code == 200
    assert [m["content"] for m in r.json()] == ["Hello, we would like to help.", "Thank you!"]

    after = db.query(Conversation).filter(Conversation.id == conversation_id).one().updated_at
    assert after >= before
    assert isinstance(after, datetime)


def test_empty_and_oversized_messages_rejected(client, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    conversation_id = _open(client, investor, institution.entity_id).json()["id"]
    url = f"/api/conversations/{conversation_id}/messages"

    assert client.post(url, headers=investor.headers, json={"content": "   "}).status_code == 422
    assert client.post(url, headers=investor.headers, json={"content": "x" * 5001}).status_code == 422


def test_outsiders_cannot_read_or_write(client, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    outsider = make_account("investor")
    admin = make_account("admin", register=False)
    conversation_id = _open(client, investor, institution.entity_id).json()["id"]
    url = f"/api/conversations/{conversation_id}/messages"

    assert client.get(url, headers=outsider.headers).status_code == 404
    assert client.post(url, headers=outsider.headers, json={"content": "Hi"}).status_code == 404
    assert client.get(url, headers=admin.headers).status_code == 404


def test_mark_read_and_unread_counts(client, make_account):
    institution = make_account("institution")
    investor = make_account("investor")
    conversation_id = _open(client, investor, institution.entity_id).json()["id"]
    url = f"/api/conversations/{conversation_id}/messages"

    client.post(url, headers=investor.headers, json={"content": "First"})
    client.post(url, headers=investor.headers, json={"content": "Second"})

    listing = client.get("/api/conversations", headers=institution.headers).json()
    assert listing[0]["unread_count"] == 2
    # The sender's own messages never count as unread for them
    assert client.get("/api/conversations", headers=investor.headers).json()[0]["unread_count"] == 0

    r = client.put(f"/api/conversations/{conversation_id}/read", headers=institution.headers)
    assert r.status_code == 200
    assert r.json()["updated"] == 2

    listing = client.get("/api/conversations", headers=institution.headers).json()
    assert listing[0]["unread_count"] == 0


def test_partners_and_search(client, make_account):
    make_account("institution", name="Riverside College")
    make_account("institution", name="Lakeside School")
    make_account("institution", status="pending", name="Pending Academy")
    investor = make_account("investor")

    partners = client.get("/api/conversations/partners", headers=investor.headers).json()
    assert [p["name"] for p in partners] == ["Lakeside School", "Riverside College"]
    assert all(p["type"] == "institution" for p in partners)

    for partner in partners:
        _open(client, investor, partner["id"])

    r = client.get("/api/conversations?search=river", headers=investor.headers)
    assert [c["other_party_name"] for c in r.json()] == ["Riverside College"]


def test_investor_name_falls_back_to_type(client, make_account):
    institution = make_account("institution")
    make_account("investor", investor_type="foundation")

    partners = client.get("/api/conversations/partners", headers=institution.headers).json()
    assert partners[0]["name"] == "foundation Investor"
