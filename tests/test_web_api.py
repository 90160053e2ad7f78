from __future__ import annotations

import base64

from starlette.testclient import TestClient

from autoservice.chat.llm import ChatModel
from autoservice.chat.orchestrator import ChatReply, ConversationOrchestrator
from autoservice.config import AssistantSettings
from autoservice.domain.models import ToolResult
from autoservice.pipeline.retry import RetryPolicy
from autoservice.store import INVOICES, MAINTENANCES, VEHICLES, DocumentStore, Put
from autoservice.web import create_app

from conftest import FakeClient, completion


class RecordingOrchestrator:
    def __init__(self) -> None:
        self.turns = []

    async def send(self, messages, images=(), pdfs=(), session_id="default"):
        self.turns.append({"messages": messages, "images": list(images), "pdfs": list(pdfs), "session_id": session_id})
        return ChatReply(
            text="Saved.",
            tool_results=[ToolResult(tool="add_invoice", data={"success": True, "message": "Invoice recorded"})],
            phase="executing_tools",
        )


def _seed(store: DocumentStore) -> None:
    store.put_ocr_text("hash-1", "| Ölwechsel | 89,90 |")
    store.transact(
        [
            Put(VEHICLES, "v1", {"make": "VW", "model": "Golf", "year": 2015, "mileage": 56000}),
            Put(
                INVOICES,
                "i1",
                {
                    "vehicle_id": "v1",
                    "workshop_name": "ATU",
                    "date": "2024-02-01",
                    "total_amount": 89.9,
                    "image_data": b"webp-bytes",
                    "ocr_cache_id": "hash-1",
                },
            ),
            Put(
                MAINTENANCES,
                "m1",
                {
                    "vehicle_id": "v1",
                    "invoice_id": "i1",
                    "type": "oil_change",
                    "done_at": "2024-02-01",
                    "mileage_at_service": 40000,
                },
            ),
        ]
    )


def _client(store: DocumentStore):
    orchestrator = RecordingOrchestrator()
    app = create_app(store=store, orchestrator=orchestrator, allow_origins=["*"])
    return TestClient(app), orchestrator


def test_read_endpoints_surface_stored_records(store: DocumentStore) -> None:
    _seed(store)
    client, _ = _client(store)

    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["counts"]["vehicles"] == 1

    vehicles = client.get("/api/vehicles").json()["items"]
    assert [v["id"] for v in vehicles] == ["v1"]
    assert vehicles[0]["has_custom_schedule"] is False

    detail = client.get("/api/vehicles/v1").json()
    assert detail["invoices"][0]["has_image"] is True
    assert "image_data" not in detail["invoices"][0]
    assert detail["maintenances"][0]["type"] == "oil_change"

    status = client.get("/api/vehicles/v1/status").json()
    oil = next(i for i in status["items"] if i["type"] == "oil_change")
    assert oil["status"] == "overdue"
    assert oil["next_due_mileage"] == 55000

    ocr = client.get("/api/invoices/i1/ocr").json()
    assert "Ölwechsel" in ocr["ocr_text"]


def test_missing_records_are_404(store: DocumentStore) -> None:
    client, _ = _client(store)
    assert client.get("/api/vehicles/nope").status_code == 404
    assert client.get("/api/vehicles/nope/status").status_code == 404
    assert client.get("/api/invoices/nope/ocr").status_code == 404


def test_chat_decodes_attachments_and_session(store: DocumentStore) -> None:
    client, orchestrator = _client(store)
    photo = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")
    pdf = "data:application/pdf;base64," + base64.b64encode(b"%PDF-1.7").decode("ascii")
    resp = client.post(
        "/api/chat",
        json={
            "messages": [{"role": "user", "content": "Here you go"}],
            "session_id": "web-1",
            "attachments": [{"kind": "image", "name": "a.png", "data": photo}, {"name": "b.pdf", "data": pdf}],
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "text": "Saved.",
        "phase": "executing_tools",
        "tool_results": [{"tool": "add_invoice", "data": {"success": True, "message": "Invoice recorded"}}],
    }
    [turn] = orchestrator.turns
    assert turn["session_id"] == "web-1"
    assert turn["images"] == [b"\x89PNG\r\n\x1a\nfake"]
    assert turn["pdfs"] == [b"%PDF-1.7"]


def test_chat_rejects_malformed_bodies(store: DocumentStore) -> None:
    client, orchestrator = _client(store)
    assert client.post("/api/chat", content=b"not json", headers={"content-type": "application/json"}).status_code == 400
    assert client.post("/api/chat", json={"messages": "hi"}).status_code == 400
    bad = client.post(
        "/api/chat",
        json={"messages": [], "attachments": [{"kind": "image", "data": "%%%not-base64%%%"}]},
    )
    assert bad.status_code == 400
    assert orchestrator.turns == []


def test_chat_accepts_history_with_legacy_attachment_metadata(store: DocumentStore) -> None:
    settings = AssistantSettings(
        provider="openai",
        api_key="test",
        base_url=None,
        chat_model="gpt-test",
        extraction_model="gpt-test",
        extraction_strategy="auto",
        ocr_backend="none",
        ocr_api_key=None,
    )
    model = ChatModel(settings, client=FakeClient([completion("Which vehicle?")]), policy=RetryPolicy(max_attempts=1, delays=()))
    orchestrator = ConversationOrchestrator(store, model)
    client = TestClient(create_app(store=store, orchestrator=orchestrator))
    history = [
        {"role": "user", "content": "Invoice attached", "attachments": [{"type": "image", "name": "a.jpg"}]},
        {"role": "assistant", "content": "I read an oil change at ATU."},
        {"role": "user", "content": "Save it"},
    ]
    resp = client.post("/api/chat", json={"messages": history, "session_id": "s1"})
    assert resp.status_code == 200
    assert resp.json()["text"] == "Which vehicle?"

    assert client.post("/api/chat", json={"messages": ["just text"]}).status_code == 400
    assert client.post("/api/chat", json={"messages": [], "attachments": "abc"}).status_code == 400
