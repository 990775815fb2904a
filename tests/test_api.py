from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

import graph as workflow
import main
from database import SessionLocal
from models import User


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def headers(auth_headers):
    return auth_headers("user_1")


def create_thread(client, headers, title="Patent filing", **extra):
    response = client.post("/threads", json={"title": title, **extra}, headers=headers)
    assert response.status_code == 201
    return response.json()


def create_item(client, headers, thread_id, query="What is the process to file a patent?"):
    response = client.post(
        f"/threads/{thread_id}/items", json={"query": query, "mode": "gpt-4o-mini"}, headers=headers
    )
    assert response.status_code == 201
    return response.json()


def test_health_routes(client):
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json()["status"] == "healthy"

    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"]["status"] == "healthy"


def test_requests_without_valid_token_are_unauthorized(client):
    response = client.get("/threads")
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}

    response = client.get("/threads", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_user_whose_email_is_taken_gets_json_error(client, auth_headers):
    assert client.get("/threads", headers=auth_headers("user_a", email="same@example.com")).status_code == 200

    response = client.get("/threads", headers=auth_headers("user_b", email="same@example.com"))
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_unexpected_errors_return_json(headers, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(main.ThreadService, "get_user_threads", broken)
    client = TestClient(main.app, raise_server_exceptions=False)

    response = client.get("/threads", headers=headers)
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_first_request_creates_the_user(client, headers):
    assert client.get("/threads", headers=headers).json() == []

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == "user_1").first()
        assert user is not None
        assert user.email == "user_1@example.com"
    finally:
        db.close()


def test_create_and_get_thread(client, headers):
    thread = create_thread(client, headers, domain="real_estate")
    assert thread["title"] == "Patent filing"
    assert thread["domain"] == "real_estate"
    assert thread["pinned"] is False
    assert thread["certified_status"] == "PENDING"

    create_item(client, headers, thread["id"])
    fetched = client.get(f"/threads/{thread['id']}", headers=headers).json()
    assert fetched["id"] == thread["id"]
    assert len(fetched["thread_items"]) == 1


def test_unknown_domain_falls_back_to_legal(client, headers):
    assert create_thread(client, headers, domain="astrology")["domain"] == "legal"


def test_create_thread_requires_title(client, headers):
    response = client.post("/threads", json={}, headers=headers)
    assert response.status_code == 400
    assert "title" in response.json()["error"]


def test_missing_and_foreign_threads_are_not_found(client, headers, auth_headers):
    assert client.get(f"/threads/{uuid4()}", headers=headers).status_code == 404
    assert client.get("/threads/not-a-uuid", headers=headers).status_code == 404

    thread = create_thread(client, headers)
    other = auth_headers("user_2")
    assert client.get(f"/threads/{thread['id']}", headers=other).status_code == 404
    assert client.delete(f"/threads/{thread['id']}", headers=other).status_code == 404


def test_list_threads_filters_and_previews(client, headers):
    first = create_thread(client, headers, title="First")
    create_item(client, headers, first["id"], query="one")
    create_item(client, headers, first["id"], query="two")
    second = create_thread(client, headers, title="Second", pinned=True)

    threads = client.get("/threads", headers=headers).json()
    assert [t["title"] for t in threads] == ["Second", "First"]
    assert [item["query"] for item in threads[1]["thread_items"]] == ["one"]

    pinned = client.get("/threads", params={"pinned": "true"}, headers=headers).json()
    assert [t["id"] for t in pinned] == [second["id"]]

    oldest_first = client.get("/threads", params={"order_direction": "asc"}, headers=headers).json()
    assert oldest_first[0]["id"] == first["id"]


def test_update_thread(client, headers):
    thread = create_thread(client, headers)

    response = client.patch(f"/threads/{thread['id']}", json={"title": "Renamed"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["title"] == "Renamed"

    response = client.put(f"/threads/{thread['id']}", json={"certified_status": "CERTIFIED"}, headers=headers)
    assert response.json()["certified_status"] == "CERTIFIED"


def test_pin_toggle_twice_restores_state(client, headers):
    thread = create_thread(client, headers)

    pinned = client.post(f"/threads/{thread['id']}/pin", headers=headers).json()
    assert pinned["pinned"] is True
    assert pinned["pinned_at"] is not None

    unpinned = client.post(f"/threads/{thread['id']}/pin", headers=headers).json()
    assert unpinned["pinned"] is False
    assert unpinned["pinned_at"] is None


def test_search_matches_titles_and_questions(client, headers):
    by_title = create_thread(client, headers, title="Lease agreement")
    by_query = create_thread(client, headers, title="Other")
    create_item(client, headers, by_query["id"], query="Can my landlord break the LEASE?")
    create_thread(client, headers, title="Unrelated")

    results = client.get("/threads/search", params={"q": "lease"}, headers=headers).json()
    assert {t["id"] for t in results} == {by_title["id"], by_query["id"]}


def test_item_activity_moves_thread_up_in_search(client, headers):
    older = create_thread(client, headers, title="Lease renewal")
    newer = create_thread(client, headers, title="Lease deposit")

    results = client.get("/threads/search", params={"q": "lease"}, headers=headers).json()
    assert [t["id"] for t in results] == [newer["id"], older["id"]]

    item = create_item(client, headers, older["id"], query="When does my lease end?")
    results = client.get("/threads/search", params={"q": "lease"}, headers=headers).json()
    assert [t["id"] for t in results] == [older["id"], newer["id"]]

    client.patch(f"/threads/{newer['id']}", json={"title": "Lease deposit refund"}, headers=headers)
    client.patch(
        f"/threads/{older['id']}/items/{item['id']}", json={"status": "COMPLETED"}, headers=headers
    )
    listed = client.get("/threads", params={"order_by": "updated_at"}, headers=headers).json()
    assert [t["id"] for t in listed] == [older["id"], newer["id"]]


def test_search_requires_query(client, headers):
    response = client.get("/threads/search", headers=headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Query parameter is required"}


def test_stats_and_clear(client, headers, auth_headers):
    thread = create_thread(client, headers, pinned=True)
    create_item(client, headers, thread["id"])
    create_thread(client, headers)
    create_thread(client, auth_headers("user_2"))

    stats = client.get("/threads/stats", headers=headers).json()
    assert stats == {"total_threads": 2, "pinned_threads": 1, "total_thread_items": 1, "threads_today": 2}

    cleared = client.delete("/threads/clear", headers=headers).json()
    assert cleared["deleted"] == 2
    assert client.get("/threads", headers=headers).json() == []
    assert len(client.get("/threads", headers=auth_headers("user_2")).json()) == 1


def test_delete_thread_removes_items(client, headers):
    thread = create_thread(client, headers)
    item = create_item(client, headers, thread["id"])

    assert client.delete(f"/threads/{thread['id']}", headers=headers).status_code == 200
    assert client.get(f"/threads/{thread['id']}", headers=headers).status_code == 404
    assert client.get(f"/threads/{thread['id']}/items/{item['id']}", headers=headers).status_code == 404


def test_thread_item_crud(client, headers):
    thread = create_thread(client, headers)

    response = client.post(f"/threads/{thread['id']}/items", json={"mode": "gpt-4o-mini"}, headers=headers)
    assert response.status_code == 400

    item = create_item(client, headers, thread["id"])
    assert item["thread_id"] == thread["id"]
    assert item["suggestions"] == []

    response = client.put(
        f"/threads/{thread['id']}/items/{item['id']}",
        json={"status": "COMPLETED", "answer": {"text": "Done"}, "metadata": {"source": "test"}},
        headers=headers,
    )
    updated = response.json()
    assert updated["status"] == "COMPLETED"
    assert updated["answer"] == {"text": "Done"}
    assert updated["metadata"] == {"source": "test"}
    assert updated["query"] == item["query"]

    items = client.get(f"/threads/{thread['id']}/items", headers=headers).json()
    assert [i["id"] for i in items] == [item["id"]]

    assert client.delete(f"/threads/{thread['id']}/items/{item['id']}", headers=headers).status_code == 200
    assert client.get(f"/threads/{thread['id']}/items/{item['id']}", headers=headers).status_code == 404


def test_delete_followups(client, headers):
    thread = create_thread(client, headers)
    first = create_item(client, headers, thread["id"], query="first")
    create_item(client, headers, thread["id"], query="second")
    create_item(client, headers, thread["id"], query="third")

    response = client.delete(f"/threads/{thread['id']}/items/{first['id']}/followups", headers=headers)
    assert response.json()["deleted"] == 2

    items = client.get(f"/threads/{thread['id']}/items", headers=headers).json()
    assert [i["query"] for i in items] == ["first"]


def test_domain_routes(client):
    domains = client.get("/domains").json()
    assert {d["domain"] for d in domains} == {"legal", "civil_engineering", "real_estate"}

    result = client.post(
        "/domains/validate", json={"question": "What's a good recipe for pasta?", "domain": "legal"}
    ).json()
    assert result["is_valid"] is False
    assert "Legal" in result["suggestion"]


def test_sync_user_routes(client, headers):
    created = client.post("/auth/sync-user", headers=headers)
    assert created.status_code == 200
    assert created.json()["user_id"] == "user_1"

    checked = client.get("/auth/sync-user", headers=headers).json()
    assert checked["user_id"] == "user_1"
    assert checked["timestamp"] is not None

    assert client.post("/auth/sync-user").status_code == 401


def webhook(event_type, user_id="user_9", email="user_9@example.com", **data):
    addresses = [{"email_address": email}] if email else []
    return {"type": event_type, "data": {"id": user_id, "email_addresses": addresses, **data}}


def test_webhook_user_lifecycle(client):
    response = client.post("/webhooks/identity", json=webhook("user.created", first_name="Ada", last_name="L"))
    assert response.status_code == 200

    client.post("/webhooks/identity", json=webhook("user.updated", email="ada@example.com", first_name="Ada"))
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == "user_9").first()
        assert user.email == "ada@example.com"
        assert user.name == "Ada"
    finally:
        db.close()

    assert client.post("/webhooks/identity", json=webhook("user.deleted", email=None)).status_code == 200
    # Deleting an unknown user is not an error
    assert client.post("/webhooks/identity", json=webhook("user.deleted", email=None)).status_code == 200
    assert client.post("/webhooks/identity", json=webhook("session.created")).status_code == 200


def test_webhook_created_without_email_is_rejected(client):
    response = client.post("/webhooks/identity", json=webhook("user.created", email=None))
    assert response.status_code == 400
    assert response.json() == {"error": "Email address is required"}


def test_webhook_secret_is_checked(client, monkeypatch):
    monkeypatch.setattr(main, "WEBHOOK_SECRET", "s3cret")

    assert client.post("/webhooks/identity", json=webhook("user.created")).status_code == 401
    response = client.post(
        "/webhooks/identity", json=webhook("user.created"), headers={"X-Webhook-Secret": "s3cret"}
    )
    assert response.status_code == 200


def test_stream_runs_workflow_and_persists_answer(client, headers, monkeypatch):
    model = GenericFakeChatModel(messages=iter([
        AIMessage(content="File an application.\nThen wait."),
        AIMessage(content="How long does it take?\nWhat does it cost?"),
    ]))
    monkeypatch.setattr(workflow, "get_chat_model", lambda mode: model)
    thread = create_thread(client, headers)

    response = client.post(
        "/stream",
        json={"thread_id": thread["id"], "message": "What is the process to file a patent?"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert "event: answer" in response.text
    assert "event: done" in response.text

    items = client.get(f"/threads/{thread['id']}/items", headers=headers).json()
    assert len(items) == 1
    assert items[0]["query"] == "What is the process to file a patent?"
    assert items[0]["answer"]["text"] == "File an application.\nThen wait."
    assert items[0]["status"] == "COMPLETED"
    assert items[0]["suggestions"] == ["How long does it take?", "What does it cost?"]


def test_stream_rejects_unknown_thread(client, headers):
    response = client.post("/stream", json={"thread_id": str(uuid4()), "message": "hello"}, headers=headers)
    assert response.status_code == 404
