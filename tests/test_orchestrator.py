import asyncio
import json

import httpx

from autoservice.chat.llm import ChatModel
from autoservice.chat.orchestrator import (
    AWAITING_CONFIRMATION,
    EXECUTING_TOOLS,
    FAILED,
    FALLBACK_REPLY,
    FAILURE_REPLY,
    RETAKE_REPLY,
    ConversationOrchestrator,
    PendingAttachmentStore,
    PendingContext,
)
from autoservice.config import AssistantSettings
from autoservice.errors import ProviderUnavailable
from autoservice.pipeline.image import ImageNormalizer
from autoservice.pipeline.ocr_cache import content_hash
from autoservice.pipeline.retry import RetryPolicy
from autoservice.store import VEHICLES, Put

from conftest import FakeClient, FakeOcr, completion, make_image, tool_call

SETTINGS = AssistantSettings(
    provider="openai",
    api_key="test",
    base_url=None,
    chat_model="gpt-test",
    extraction_model="gpt-test",
    extraction_strategy="auto",
    ocr_backend="none",
    ocr_api_key=None,
)


def _orchestrator(store, responses, ocr=None, pending=None):
    client = FakeClient(responses)
    model = ChatModel(SETTINGS, client=client, policy=RetryPolicy(max_attempts=1, delays=()))
    orch = ConversationOrchestrator(
        store,
        model,
        ocr=ocr,
        normalizer=ImageNormalizer(detector=lambda img: None),
        pending=pending,
    )
    return orch, client


def _seed_vehicle(store, mileage=40000):
    store.transact([Put(VEHICLES, "v1", {"make": "BMW", "model": "320d", "year": 2012, "mileage": mileage})])


INVOICE_ARGS = {
    "vehicle_id": "v1",
    "workshop_name": "BMW Niederlassung",
    "date": "2024-03-01",
    "total_amount": 350.0,
    "mileage_at_service": 52000,
    "image_index": 0,
    "items": [
        {"description": "Motoröl und Ölfilter", "category": "oil_change", "amount": 150.0},
        {"description": "Bremsbeläge hinten", "category": "other", "amount": 120.0},
        {"description": "Pollenfilter", "category": "other", "amount": 80.0},
    ],
}


def test_two_phase_confirmation(store):
    _seed_vehicle(store)
    ocr = FakeOcr(text="| Motoröl | 150,00 |")
    orch, client = _orchestrator(
        store,
        [
            completion("Workshop: BMW Niederlassung ... Is this correct?"),
            completion("", [tool_call("add_invoice", INVOICE_ARGS)]),
            completion("Invoice saved with 3 items."),
        ],
        ocr=ocr,
    )
    photo = make_image(60, 80)
    history = [{"role": "user", "content": "Here is my invoice"}]

    first = asyncio.run(orch.send(history, images=[photo], session_id="s1"))
    assert first.phase == AWAITING_CONFIRMATION
    assert first.tool_results == []
    assert store.counts()["invoices"] == 0
    assert store.counts()["maintenances"] == 0
    assert "tools" not in client.completions.calls[0]
    system = client.completions.calls[0]["messages"][0]["content"]
    assert "| Motoröl | 150,00 |" in system
    user_parts = client.completions.calls[0]["messages"][-1]["content"]
    assert user_parts[1]["image_url"]["url"].startswith("data:image/")

    history += [{"role": "assistant", "content": first.text}, {"role": "user", "content": "Yes, save it"}]
    second = asyncio.run(orch.send(history, session_id="s1"))
    assert second.phase == EXECUTING_TOOLS
    assert second.text == "Invoice saved with 3 items."
    assert [r.tool for r in second.tool_results] == ["add_invoice"]

    counts = store.counts()
    assert counts["invoices"] == 1
    assert counts["maintenances"] == 3
    [invoice] = store.invoices("v1")
    assert invoice.image_data
    assert invoice.ocr_cache_id == content_hash(invoice.image_data)
    assert ocr.image_calls == 1
    tool_names = {t["function"]["name"] for t in client.completions.calls[1]["tools"]}
    assert "scan_document" not in tool_names
    assert orch.pending.peek("s1") is None


def test_pending_attachments_are_per_session(store):
    _seed_vehicle(store)
    orch, client = _orchestrator(
        store,
        [completion("Looks like an invoice."), completion("Nothing pending here.")],
    )
    asyncio.run(orch.send([{"role": "user", "content": "scan"}], images=[make_image()], session_id="a"))
    reply = asyncio.run(orch.send([{"role": "user", "content": "hello"}], session_id="b"))
    assert reply.text == "Nothing pending here."
    assert orch.pending.peek("a") is not None
    tool_names = {t["function"]["name"] for t in client.completions.calls[1]["tools"]}
    assert "scan_document" in tool_names


def test_corrupt_image_asks_for_retake_without_pending_state(store):
    orch, client = _orchestrator(store, [])
    reply = asyncio.run(orch.send([{"role": "user", "content": "invoice"}], images=[b"garbage"], session_id="s"))
    assert reply.text == RETAKE_REPLY
    assert orch.pending.peek("s") is None
    assert client.completions.calls == []


def test_ocr_failure_for_one_image_is_skipped(store):
    class HalfBrokenOcr(FakeOcr):
        async def ocr_image(self, image):
            self.image_calls += 1
            if self.image_calls == 1:
                raise ProviderUnavailable("ocr down")
            return "second page text"

    orch, client = _orchestrator(store, [completion("Two images analyzed.")], ocr=HalfBrokenOcr())
    images = [make_image(60, 80, "white"), make_image(60, 80, "black")]
    reply = asyncio.run(orch.send([{"role": "user", "content": "two"}], images=images, session_id="s"))
    assert reply.phase == AWAITING_CONFIRMATION
    assert orch.pending.peek("s").ocr_texts == ["", "second page text"]
    assert "second page text" in client.completions.calls[0]["messages"][0]["content"]


def test_ocr_client_error_does_not_abort_analysis(store):
    class RejectingOcr(FakeOcr):
        async def ocr_image(self, image):
            self.image_calls += 1
            request = httpx.Request("POST", "https://ocr.test/v1/ocr")
            raise httpx.HTTPStatusError("unauthorized", request=request, response=httpx.Response(401, request=request))

    orch, client = _orchestrator(store, [completion("I can see an invoice.")], ocr=RejectingOcr())
    reply = asyncio.run(orch.send([{"role": "user", "content": "invoice"}], images=[make_image(60, 80)], session_id="s"))
    assert reply.phase == AWAITING_CONFIRMATION
    assert reply.text == "I can see an invoice."
    assert orch.pending.peek("s").ocr_texts == [""]


def test_too_many_images_fall_back_to_ocr_text(store):
    orch, client = _orchestrator(store, [completion("Read from OCR.")], ocr=FakeOcr())
    orch.max_vision_images = 2
    images = [make_image(60, 80, c) for c in ("white", "black", "gray")]
    asyncio.run(orch.send([{"role": "user", "content": "three"}], images=images, session_id="s"))
    assert isinstance(client.completions.calls[0]["messages"][-1]["content"], str)
    assert len(orch.pending.peek("s").images) == 3


def test_pdf_turn_uses_page_ocr_and_raises_step_limit(store):
    _seed_vehicle(store)
    ocr = FakeOcr(pages=["Invoice A", "Invoice B", "Invoice C"])
    orch, client = _orchestrator(store, [completion("3 pages analyzed.")], ocr=ocr)
    reply = asyncio.run(orch.send([{"role": "user", "content": "pdf"}], pdfs=[b"%PDF-1.7 ..."], session_id="p"))
    assert reply.phase == AWAITING_CONFIRMATION
    assert "--- Page 2 ---\nInvoice B" in client.completions.calls[0]["messages"][0]["content"]
    ctx = orch.pending.peek("p")
    assert ctx.pages == ["Invoice A", "Invoice B", "Invoice C"]
    assert ctx.step_limit() == 8


def test_pdf_without_ocr_backend_is_refused(store):
    orch, client = _orchestrator(store, [])
    reply = asyncio.run(orch.send([{"role": "user", "content": "pdf"}], pdfs=[b"%PDF-1.4"], session_id="p"))
    assert "OCR" in reply.text
    assert client.completions.calls == []


def test_tool_only_reply_falls_back_to_summaries(store):
    _seed_vehicle(store)
    orch, _ = _orchestrator(
        store,
        [completion("", [tool_call("list_vehicles", {})]), completion("")],
    )
    reply = asyncio.run(orch.send([{"role": "user", "content": "which cars?"}]))
    assert "BMW 320d" in reply.text
    assert reply.tool_results[0].data["success"] is True


def test_empty_reply_without_tools_is_done(store):
    orch, _ = _orchestrator(store, [completion("")])
    reply = asyncio.run(orch.send([{"role": "user", "content": "ok"}]))
    assert reply.text == FALLBACK_REPLY


def test_tool_loop_is_bounded(store):
    _seed_vehicle(store)
    looping = [completion("", [tool_call("list_vehicles", {}, call_id=f"c{i}")]) for i in range(5)]
    orch, client = _orchestrator(store, looping)
    reply = asyncio.run(orch.send([{"role": "user", "content": "loop"}]))
    assert len(client.completions.calls) == 5
    assert len(reply.tool_results) == 5


def test_failed_tool_arguments_are_reported_to_model(store):
    _seed_vehicle(store)
    orch, client = _orchestrator(
        store,
        [completion("", [tool_call("get_vehicle", {"vehicle_id": "invented"})]), completion("I could not find it.")],
    )
    reply = asyncio.run(orch.send([{"role": "user", "content": "show my car"}]))
    assert reply.tool_results == []
    tool_message = client.completions.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert json.loads(tool_message["content"])["success"] is False


def test_provider_error_becomes_generic_reply(store):
    orch, _ = _orchestrator(store, [ProviderUnavailable("boom")])
    reply = asyncio.run(orch.send([{"role": "user", "content": "hi"}]))
    assert reply.phase == FAILED
    assert reply.text == FAILURE_REPLY


def test_pending_store_expires_and_drains_once():
    now = [1000.0]
    pending = PendingAttachmentStore(ttl_seconds=60, clock=lambda: now[0])
    pending.put("s", PendingContext(images=[b"x"]))
    assert pending.peek("s").images == [b"x"]
    assert pending.drain("s") is not None
    assert pending.drain("s") is None

    pending.put("s", PendingContext(images=[b"y"]))
    now[0] += 61
    assert pending.peek("s") is None
