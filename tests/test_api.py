import json

import pytest
from fastapi.testclient import TestClient

from src.branchchat.api.main import app
from src.branchchat.infrastructure.chat_store import get_chat_store
from src.branchchat.services import model_source
from src.branchchat.services.branch_manager import BranchManager

from .utils import auth_headers


client = TestClient(app)


class FakeSource:
    def __init__(self, tokens=(), error=None):
        self.tokens = list(tokens)
        self.error = error
        self.seen = None

    def stream(self, messages, model):
        self.seen = messages
        for token in self.tokens:
            yield token
        if self.error is not None:
            raise self.error

    def complete(self, messages, model):
        return "".join(self.tokens)


def _events(response):
    return [json.loads(line[6:]) for line in response.text.splitlines() if line.startswith("data: ")]


def _new_conversation(headers, **body):
    r = client.post("/conversations", json=body, headers=headers)
    assert r.status_code == 201
    return r.json()


def _send(cid, headers, content, **extra):
    return client.post(f"/conversations/{cid}/messages", json={"content": content, **extra}, headers=headers)


@pytest.fixture
def alice():
    return auth_headers("alice")


def test_health_and_root():
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/").json()["name"] == "BranchChat API"


def test_send_updates_title_and_last_message(alice):
    conv = _new_conversation(alice)
    assert conv["title"] == "New Chat"
    text = "x" * 40
    r = _send(conv["conversation_id"], alice, text)
    assert r.status_code == 201
    assert r.json()["sender_name"] == "Alice"

    fetched = client.get(f"/conversations/{conv['conversation_id']}", headers=alice).json()
    assert fetched["title"] == "x" * 27 + "..."
    assert fetched["last_message"] == text
    listed = client.get("/conversations", headers=alice).json()
    assert [c["conversation_id"] for c in listed] == [conv["conversation_id"]]


def test_branch_create_list_and_switch(alice):
    cid = _new_conversation(alice, title="Branches")["conversation_id"]
    question = _send(cid, alice, "question").json()
    answer = _send(cid, alice, "first answer", kind="ai").json()

    r = client.post(
        f"/conversations/{cid}/messages/{question['message_id']}/branches",
        json={"content": "second answer", "kind": "ai"},
        headers=alice,
    )
    assert r.status_code == 201
    assert r.json()["branch_index"] == 1

    path = client.get(f"/conversations/{cid}/messages", headers=alice).json()
    assert [m["content"] for m in path] == ["question", "second answer"]

    branches = client.get(f"/conversations/{cid}/messages/{question['message_id']}/branches", headers=alice).json()
    assert [b["branch_index"] for b in branches] == [0, 1]

    r = client.put(
        f"/conversations/{cid}/messages/{question['message_id']}/branches/active",
        json={"branch_index": 0},
        headers=alice,
    )
    assert r.status_code == 200
    assert r.json()["message_id"] == answer["message_id"]
    path = client.get(f"/conversations/{cid}/messages", headers=alice).json()
    assert path[-1]["message_id"] == answer["message_id"]

    r = client.put(
        f"/conversations/{cid}/messages/{question['message_id']}/branches/active",
        json={"branch_index": 9},
        headers=alice,
    )
    assert r.status_code == 404
    assert r.json()["code"] == "BRANCH_NOT_FOUND"


def test_anonymous_sends_are_rate_limited():
    cid = _new_conversation({})["conversation_id"]
    for n in range(10):
        assert _send(cid, {}, f"message {n}").status_code == 201
    r = _send(cid, {}, "one too many")
    assert r.status_code == 429
    body = r.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["limit_name"] == "anonymousDaily"
    assert body["retry_after_ms"] > 0
    assert int(r.headers["Retry-After"]) >= 1
    # AI replies are not counted against the sender
    assert _send(cid, {}, "still allowed", kind="ai").status_code == 201


def test_stream_reply_persists_message(alice, monkeypatch):
    source = FakeSource(["Hello", " there"])
    monkeypatch.setattr(model_source, "_source", source)
    cid = _new_conversation(alice)["conversation_id"]
    _send(cid, alice, "hi")

    r = client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi", "model": "openai/gpt-4o-mini"}, headers=alice)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "complete"
    assert events[-1]["full_text"] == "Hello there"
    assert [m["role"] for m in source.seen] == ["system", "user"]

    path = client.get(f"/conversations/{cid}/messages", headers=alice).json()
    assert path[-1]["kind"] == "ai"
    assert path[-1]["status"] == "complete"
    assert path[-1]["content"] == "Hello there"
    assert path[-1]["ai_model"] == "openai/gpt-4o-mini"

    snapshot = _events(client.get(f"/conversations/{cid}/messages/{events[0]['message_id']}/events", headers=alice))
    assert snapshot == [
        {"type": "snapshot", "message_id": events[0]["message_id"], "status": "complete", "content": "Hello there"}
    ]


def test_stream_upstream_failure_marks_error(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["par"], error=RuntimeError("429 Too Many Requests")))
    cid = _new_conversation(alice)["conversation_id"]
    _send(cid, alice, "hi")

    events = _events(client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi"}, headers=alice))
    assert events[-1]["type"] == "error"
    assert events[-1]["code"] == "RATE_LIMIT"

    last = client.get(f"/conversations/{cid}/messages", headers=alice).json()[-1]
    assert last["status"] == "error"
    assert last["content"].startswith("par")


def test_regenerate_adds_sibling_reply(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["v1"]))
    cid = _new_conversation(alice)["conversation_id"]
    question = _send(cid, alice, "hi").json()
    first = _events(client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi"}, headers=alice))

    monkeypatch.setattr(model_source, "_source", FakeSource(["v2"]))
    client.post(
        f"/conversations/{cid}/ai/stream",
        json={"prompt": "hi", "regenerate_message_id": first[0]["message_id"]},
        headers=alice,
    )
    branches = client.get(f"/conversations/{cid}/messages/{question['message_id']}/branches", headers=alice).json()
    assert [b["content"] for b in branches] == ["v1", "v2"]
    assert client.get(f"/conversations/{cid}/messages", headers=alice).json()[-1]["content"] == "v2"

    r = client.post(
        f"/conversations/{cid}/ai/stream",
        json={"prompt": "hi", "regenerate_message_id": question["message_id"]},
        headers=alice,
    )
    assert r.status_code == 409


def test_stop_orphaned_stream(alice):
    cid = _new_conversation(alice)["conversation_id"]
    live = BranchManager(get_chat_store()).append(cid, "partial", "ai-assistant", "ai", status="streaming")
    r = client.post(f"/conversations/{cid}/messages/{live.message_id}/stop", headers=alice)
    assert r.status_code == 200
    assert r.json()["status"] == "complete"
    assert r.json()["content"] == "partial"


def test_delete_message_is_leaf_only(alice):
    cid = _new_conversation(alice)["conversation_id"]
    first = _send(cid, alice, "one").json()
    second = _send(cid, alice, "two").json()

    r = client.delete(f"/conversations/{cid}/messages/{first['message_id']}", headers=alice)
    assert r.status_code == 409
    assert r.json()["code"] == "MESSAGE_HAS_REPLIES"
    assert client.delete(f"/conversations/{cid}/messages/{second['message_id']}", headers=alice).status_code == 204
    assert client.delete(f"/conversations/{cid}/messages/{first['message_id']}", headers=alice).status_code == 204


def test_participants_and_write_access(alice):
    bob = auth_headers("bob")
    cid = _new_conversation(alice)["conversation_id"]
    r = _send(cid, bob, "let me in")
    assert r.status_code == 403
    assert r.json()["code"] == "UNAUTHORIZED"

    r = client.post(f"/conversations/{cid}/participants", json={"user_id": "bob"}, headers=alice)
    assert r.json()["is_collaborative"] is True
    assert _send(cid, bob, "hello all").status_code == 201

    assert client.delete(f"/conversations/{cid}", headers=bob).status_code == 403
    assert client.delete(f"/conversations/{cid}", headers=alice).status_code == 204
    r = client.get(f"/conversations/{cid}", headers=alice)
    assert r.status_code == 404
    assert r.json()["code"] == "CONVERSATION_NOT_FOUND"


def test_rename(alice):
    cid = _new_conversation(alice)["conversation_id"]
    r = client.patch(f"/conversations/{cid}", json={"title": "Renamed"}, headers=alice)
    assert r.json()["title"] == "Renamed"
    assert client.patch(f"/conversations/{cid}", json={"title": ""}, headers=alice).status_code == 422


def test_password_protected_sharing(alice):
    cid = _new_conversation(alice)["conversation_id"]
    _send(cid, alice, "shared content")
    r = client.put(
        f"/conversations/{cid}/sharing",
        json={"is_public": True, "allow_anonymous": True, "password": "pw"},
        headers=alice,
    )
    sharing = r.json()["sharing"]
    assert sharing["requires_password"] is True
    assert sharing["password_hash"] is None

    assert client.get(f"/conversations/{cid}").status_code == 403
    ok = client.get(f"/conversations/{cid}/messages", headers={"X-Share-Password": "pw"})
    assert ok.status_code == 200
    assert [m["content"] for m in ok.json()] == ["shared content"]

    assert client.delete(f"/conversations/{cid}/sharing", headers=alice).json()["sharing"] is None
    assert client.get(f"/conversations/{cid}", headers={"X-Share-Password": "pw"}).status_code == 403


def test_fork_via_api(alice):
    cid = _new_conversation(alice, title="Original")["conversation_id"]
    _send(cid, alice, "one")
    second = _send(cid, alice, "two").json()
    _send(cid, alice, "three", kind="ai")

    r = client.post(f"/conversations/{cid}/fork", json={"message_id": second["message_id"]}, headers=alice)
    assert r.status_code == 201
    fork = r.json()
    assert fork["title"] == "Original v2"
    copied = client.get(f"/conversations/{fork['conversation_id']}/messages", headers=alice).json()
    assert [m["content"] for m in copied][:2] == ["one", "two"]

    assert client.post(f"/conversations/{cid}/fork", json={"message_id": second["message_id"]}).status_code == 403


def test_limits_status_and_check(alice):
    status = client.get("/limits/status", params={"model": "openai/o1-pro"}, headers=alice).json()
    assert status["can_send"] is True
    assert status["user_type"] == "free"
    assert status["model_daily"]["limit_name"] == "premiumModelsDaily"

    for _ in range(5):
        assert client.post("/limits/check", json={"limit_name": "failedLogins", "consume": True}, headers=alice).json()["ok"]
    denied = client.post("/limits/check", json={"limit_name": "failedLogins", "consume": True}, headers=alice).json()
    assert denied["ok"] is False
    assert denied["retry_after_ms"] > 0

    r = client.post("/limits/check", json={"limit_name": "nope"}, headers=alice)
    assert r.status_code == 404
    assert r.json()["code"] == "LIMIT_NOT_FOUND"


def test_invalid_token_is_rejected():
    r = client.get("/conversations", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_api_prefix_mirrors_routes(alice):
    _new_conversation(alice)
    assert len(client.get("/api/conversations", headers=alice).json()) == 1


def test_stream_parent_must_belong_to_the_conversation(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["leak"]))
    bob = auth_headers("bob")
    bob_cid = _new_conversation(bob)["conversation_id"]
    secret = _send(bob_cid, bob, "secret").json()
    alice_cid = _new_conversation(alice)["conversation_id"]

    r = client.post(
        f"/conversations/{alice_cid}/ai/stream",
        json={"prompt": "hi", "parent_message_id": secret["message_id"]},
        headers=alice,
    )
    assert r.status_code == 404
    assert r.json()["code"] == "MESSAGE_NOT_FOUND"
    rows = get_chat_store().list_messages(bob_cid)
    assert [(m.author_id, m.content) for m in rows] == [("bob", "secret")]


def test_stream_with_unknown_parent_is_rejected_before_streaming(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["never"]))
    cid = _new_conversation(alice)["conversation_id"]
    r = client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi", "parent_message_id": "nope"}, headers=alice)
    assert r.status_code == 404
    assert r.json()["code"] == "MESSAGE_NOT_FOUND"
    assert not r.headers["content-type"].startswith("text/event-stream")
    assert get_chat_store().list_messages(cid) == []


def test_streams_are_charged_to_the_model_tier(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["ok"]))
    cid = _new_conversation(alice)["conversation_id"]
    codes = [
        client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi", "model": "openai/o1-pro"}, headers=alice).status_code
        for _ in range(9)
    ]
    assert codes == [200] * 7 + [429] * 2
    r = client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "hi", "model": "openai/o1-pro"}, headers=alice)
    assert r.json()["limit_name"] == "premiumModelsDaily"


def test_reply_to_an_admitted_send_is_not_charged_twice(alice, monkeypatch):
    monkeypatch.setattr(model_source, "_source", FakeSource(["answer"]))
    cid = _new_conversation(alice)["conversation_id"]
    _send(cid, alice, "question", ai_model="openai/o1-pro")

    def premium_remaining():
        status = client.get("/limits/status", params={"model": "openai/o1-pro"}, headers=alice).json()
        return status["model_daily"]["remaining"]

    assert premium_remaining() == 6
    r = client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "question", "model": "openai/o1-pro"}, headers=alice)
    assert _events(r)[-1]["type"] == "complete"
    assert premium_remaining() == 6
    # A second reply to the same question is a new model call
    client.post(f"/conversations/{cid}/ai/stream", json={"prompt": "question", "model": "openai/o1-pro"}, headers=alice)
    assert premium_remaining() == 5


def test_password_share_viewer_can_list_branches(alice):
    cid = _new_conversation(alice)["conversation_id"]
    question = _send(cid, alice, "question").json()
    _send(cid, alice, "answer", kind="ai")
    client.put(
        f"/conversations/{cid}/sharing",
        json={"is_public": True, "allow_anonymous": True, "password": "pw"},
        headers=alice,
    )
    url = f"/conversations/{cid}/messages/{question['message_id']}/branches"
    assert client.get(url).status_code == 403
    r = client.get(url, headers={"X-Share-Password": "pw"})
    assert r.status_code == 200
    assert [b["content"] for b in r.json()] == ["answer"]
