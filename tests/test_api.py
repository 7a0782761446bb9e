"""Tests for the HTTP API using the Quart test client."""
import asyncio
import io

import pytest
from quart.datastructures import FileStorage

from librarian import config, db
from librarian.main import create_app
from librarian.pipeline import NO_DOCUMENTS_RESPONSES
from librarian.services import build_services
from tests.conftest import FakeOllamaClient

ALICE = {"X-Owner-Id": "alice"}
BOB = {"X-Owner-Id": "bob"}

HIRING_DOCUMENT = b"Project goals: ship v2 by Q3, hire two engineers."


@pytest.fixture
def ollama():
    return FakeOllamaClient(models=[config.CHAT_MODEL, config.EMBEDDING_MODEL])


@pytest.fixture
def services(ollama, embedder, generator, vector_store, blob_store):
    return build_services(
        client=ollama,
        embedder=embedder,
        generator=generator,
        vector_store=vector_store,
        blob_store=blob_store,
    )


@pytest.fixture
async def client(services):
    app = create_app(services)
    yield app.test_client()
    await services.memory_writer.drain()


def as_file(data, filename, content_type):
    return {"file": FileStorage(io.BytesIO(data), filename=filename, content_type=content_type)}


async def wait_for_processing(document_id, timeout=5.0):
    """Poll until background processing settles."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        document = db.get_document(document_id)
        if document["status"] in ("embedded", "failed"):
            return document
        await asyncio.sleep(0.01)
    raise AssertionError(f"Document {document_id} still processing")


async def upload(client, data=HIRING_DOCUMENT, filename="goals.md", content_type="text/markdown", headers=ALICE):
    response = await client.post("/api/documents", headers=headers, files=as_file(data, filename, content_type))
    assert response.status_code == 201
    body = await response.get_json()
    return await wait_for_processing(body["document_id"])


# Owner header


async def test_missing_owner_header_is_rejected(client):
    response = await client.get("/api/documents")

    assert response.status_code == 400
    assert "X-Owner-Id" in (await response.get_json())["error"]


async def test_overlong_owner_header_is_rejected(client):
    response = await client.get("/api/documents", headers={"X-Owner-Id": "x" * 129})

    assert response.status_code == 400


# Documents


async def test_upload_processes_in_background(client):
    response = await client.post(
        "/api/documents", headers=ALICE, files=as_file(HIRING_DOCUMENT, "goals.md", "text/markdown")
    )

    assert response.status_code == 201
    body = await response.get_json()
    assert body["status"] == "uploaded"
    assert body["path"].startswith("alice/documents/")

    document = await wait_for_processing(body["document_id"])
    assert document["status"] == "embedded"
    assert document["chunk_count"] == 1

    listed = await (await client.get("/api/documents", headers=ALICE)).get_json()
    assert [d["id"] for d in listed["documents"]] == [body["document_id"]]
    assert (await (await client.get("/api/documents", headers=BOB)).get_json())["documents"] == []


async def test_upload_infers_type_from_extension(client):
    document = await upload(client, filename="notes.md", content_type="application/octet-stream")

    assert document["mime_type"] == "text/markdown"


async def test_upload_rejects_unsupported_type(client):
    response = await client.post(
        "/api/documents", headers=ALICE, files=as_file(b"\x89PNG", "photo.png", "image/png")
    )

    assert response.status_code == 400
    assert "Unsupported file type" in (await response.get_json())["error"]


async def test_upload_rejects_empty_and_missing_files(client):
    empty = await client.post("/api/documents", headers=ALICE, files=as_file(b"", "empty.txt", "text/plain"))
    missing = await client.post("/api/documents", headers=ALICE, form={"note": "no file"})

    assert empty.status_code == 400
    assert missing.status_code == 400


async def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 10)

    response = await client.post(
        "/api/documents", headers=ALICE, files=as_file(b"x" * 11, "big.txt", "text/plain")
    )

    assert response.status_code == 413


async def test_process_document_statuses(client, services):
    document = await upload(client)

    missing = await client.post("/api/documents/does-not-exist/process", headers=ALICE)
    other_owner = await client.post(f"/api/documents/{document['id']}/process", headers=BOB)
    assert missing.status_code == 404
    assert other_owner.status_code == 404

    response = await client.post(f"/api/documents/{document['id']}/process", headers=ALICE)
    body = await response.get_json()
    assert response.status_code == 200
    assert body["status"] == "embedded"
    assert body["chunks_created"] == 1

    services.ingest._active.add(document["id"])
    busy = await client.post(f"/api/documents/{document['id']}/process", headers=ALICE)
    busy_delete = await client.delete(f"/api/documents/{document['id']}", headers=ALICE)
    services.ingest._active.discard(document["id"])
    assert busy.status_code == 409
    assert busy_delete.status_code == 409


async def test_process_failure_reports_failed(client, embedder):
    document = await upload(client)
    embedder.fail = True

    response = await client.post(f"/api/documents/{document['id']}/process", headers=ALICE)

    assert response.status_code == 500
    assert (await response.get_json())["status"] == "failed"
    assert db.get_document(document["id"])["status"] == "failed"


async def test_delete_document(client, vector_store):
    document = await upload(client)

    assert (await client.delete(f"/api/documents/{document['id']}", headers=BOB)).status_code == 404
    assert (await client.delete(f"/api/documents/{document['id']}", headers=ALICE)).status_code == 204
    assert (await client.delete(f"/api/documents/{document['id']}", headers=ALICE)).status_code == 404
    assert vector_store.count("alice") == 0


# Chat


async def test_chat_without_documents_is_fallback(client, generator):
    response = await client.post("/api/chat", headers=ALICE, json={"message": "What should I focus on?"})
    body = await response.get_json()

    assert response.status_code == 200
    assert body["is_fallback"] is True
    assert body["response"] in NO_DOCUMENTS_RESPONSES
    assert body["sources"] == []
    assert body["session_id"]
    assert generator.calls == []


async def test_chat_answers_from_uploaded_documents(client, services):
    document = await upload(client)

    response = await client.post("/api/chat", headers=ALICE, json={"message": "What is our hiring goal?"})
    body = await response.get_json()

    assert response.status_code == 200
    assert body["is_fallback"] is False
    assert body["response"] == "Answer to: What is our hiring goal?"
    assert body["sources"][0]["source_id"] == document["id"]
    assert body["report_id"]
    assert body["model"] == config.CHAT_MODEL

    await services.memory_writer.drain()
    stats = await (await client.get("/api/index/stats", headers=ALICE)).get_json()
    assert stats["document_chunks"] == 1
    assert stats["conversation_turns"] == 1
    assert stats["document_count"] == 1
    assert stats["embedded_documents"] == 1


async def test_chat_rejects_invalid_messages(client):
    empty = await client.post("/api/chat", headers=ALICE, json={"message": "   "})
    too_long = await client.post(
        "/api/chat", headers=ALICE, json={"message": "x" * (config.MAX_MESSAGE_LENGTH + 1)}
    )
    no_body = await client.post("/api/chat", headers=ALICE, data="not json")

    assert empty.status_code == 400
    assert (await empty.get_json())["error"] == "Message cannot be empty"
    assert too_long.status_code == 400
    assert no_body.status_code == 400


async def test_chat_with_unknown_session_is_404(client):
    response = await client.post(
        "/api/chat", headers=ALICE, json={"message": "hello", "session_id": "missing"}
    )

    assert response.status_code == 404


async def test_insight_endpoint(client):
    await upload(client, data=b"marathon training plan")

    response = await client.post("/api/insights", headers=ALICE, json={"topic": "marathon training plan"})
    body = await response.get_json()

    assert response.status_code == 200
    assert body["is_fallback"] is False
    assert body["insight"]
    assert body["report_id"]

    blank = await client.post("/api/insights", headers=ALICE, json={"topic": "  "})
    assert blank.status_code == 400


# Sessions


async def test_session_lifecycle(client):
    created = await client.post("/api/sessions", headers=ALICE, json={"title": "Planning"})
    session = await created.get_json()
    assert created.status_code == 201
    assert session["title"] == "Planning"

    await client.post("/api/chat", headers=ALICE, json={"message": "hello", "session_id": session["id"]})

    messages = await (await client.get(f"/api/sessions/{session['id']}/messages", headers=ALICE)).get_json()
    assert [m["role"] for m in messages["messages"]] == ["user", "assistant"]

    listed = await (await client.get("/api/sessions", headers=ALICE)).get_json()
    assert [s["id"] for s in listed["sessions"]] == [session["id"]]
    assert (await (await client.get("/api/sessions", headers=BOB)).get_json())["sessions"] == []
    assert (await client.get(f"/api/sessions/{session['id']}/messages", headers=BOB)).status_code == 404

    assert (await client.delete(f"/api/sessions/{session['id']}", headers=ALICE)).status_code == 204
    assert (await client.delete(f"/api/sessions/{session['id']}", headers=ALICE)).status_code == 404


# Reports and prompts


async def test_report_management(client):
    await upload(client)
    chat = await (await client.post("/api/chat", headers=ALICE, json={"message": "What is our hiring goal?"})).get_json()
    report_id = chat["report_id"]

    reports = await (await client.get("/api/reports", headers=ALICE)).get_json()
    assert [r["id"] for r in reports["reports"]] == [report_id]
    assert (await client.get(f"/api/reports/{report_id}", headers=BOB)).status_code == 404

    patched = await client.patch(f"/api/reports/{report_id}", headers=ALICE, json={"title": "Hiring"})
    assert patched.status_code == 200
    assert (await patched.get_json())["title"] == "Hiring"

    assert (await client.delete(f"/api/reports/{report_id}", headers=ALICE)).status_code == 204
    assert (await client.get(f"/api/reports/{report_id}", headers=ALICE)).status_code == 404


async def test_prompt_history_limit(client):
    await upload(client)
    for question in ("What is our hiring goal?", "When does v2 ship?"):
        await client.post("/api/chat", headers=ALICE, json={"message": question})

    prompts = await (await client.get("/api/prompts?limit=1", headers=ALICE)).get_json()
    assert [p["prompt"] for p in prompts["prompts"]] == ["When does v2 ship?"]

    bad = await client.get("/api/prompts?limit=many", headers=ALICE)
    assert bad.status_code == 400


# Health


async def test_health_live(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert (await response.get_json())["status"] == "alive"


async def test_health_ready(client, ollama):
    ready = await client.get("/health/ready")
    assert ready.status_code == 200

    ollama.models = [config.CHAT_MODEL]
    missing = await client.get("/health/ready")
    assert missing.status_code == 503
    assert config.EMBEDDING_MODEL in (await missing.get_json())["error"]

    ollama.reachable = False
    unreachable = await client.get("/health/ready")
    assert unreachable.status_code == 503
    assert (await unreachable.get_json())["ollama"] is False


async def test_unknown_route_is_json_404(client):
    response = await client.get("/api/nothing-here", headers=ALICE)

    assert response.status_code == 404
    assert (await response.get_json())["error"] == "Not found"
