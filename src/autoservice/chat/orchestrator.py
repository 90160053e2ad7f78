"""Conversation orchestrator: attachment analysis, confirmation, tool execution.

A turn that carries attachments is analysis only: the model sees the images
(and their OCR text) with tools disabled and presents what it recognized.
The normalized attachments are parked per session until the next turn, in
which tools are enabled and the confirmed data can be written.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import openai

from ..config import AssistantSettings
from ..domain.models import ChatMessage, ToolResult
from ..errors import AutoserviceError, CorruptImage
from ..logging import get_logger
from ..pipeline.extraction import StructuredExtractor
from ..pipeline.image import ImageNormalizer
from ..pipeline.ocr import build_ocr_service
from ..pipeline.ocr_cache import OcrCache
from ..store.db import DocumentStore
from . import prompts
from .llm import ChatModel
from .results import summarize
from .tools import SCAN_DOCUMENT, build_registry

LOG = get_logger("orchestrator")

IDLE = "idle"
AWAITING_CONFIRMATION = "awaiting_confirmation"
EXECUTING_TOOLS = "executing_tools"
FAILED = "error"

DEFAULT_STEPS = 5
FALLBACK_REPLY = "Done."
FAILURE_REPLY = "Sorry, something went wrong while processing your request. Please try again."
RETAKE_REPLY = "One of the images could not be read. Please take the photo again and resend it."
NO_OCR_FOR_PDF_REPLY = "PDF documents need an OCR backend, and none is configured. Please send photos instead."


@dataclass
class PendingContext:
    images: List[bytes] = field(default_factory=list)
    ocr_texts: List[str] = field(default_factory=list)
    pages: List[str] = field(default_factory=list)
    created_at: float = 0.0

    def step_limit(self) -> int:
        if self.pages:
            return max(DEFAULT_STEPS, len(self.pages) * 2 + 2)
        return DEFAULT_STEPS


class PendingAttachmentStore:
    """Attachments awaiting confirmation, one slot per session, with expiry."""

    def __init__(self, ttl_seconds: float = 1800, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._slots: Dict[str, PendingContext] = {}

    def put(self, session_id: str, ctx: PendingContext) -> None:
        ctx.created_at = self.clock()
        self._slots[session_id] = ctx

    def peek(self, session_id: str) -> Optional[PendingContext]:
        ctx = self._slots.get(session_id)
        if ctx is None:
            return None
        if self.clock() - ctx.created_at > self.ttl_seconds:
            LOG.info(f"Pending attachments for session {session_id!r} expired")
            del self._slots[session_id]
            return None
        return ctx

    def drain(self, session_id: str) -> Optional[PendingContext]:
        ctx = self.peek(session_id)
        if ctx is not None:
            del self._slots[session_id]
        return ctx


@dataclass
class ChatReply:
    text: str
    tool_results: List[ToolResult] = field(default_factory=list)
    phase: str = IDLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "phase": self.phase,
            "tool_results": [{"tool": r.tool, "data": r.data} for r in self.tool_results],
        }


def _history(messages: Sequence[Union[ChatMessage, Dict[str, Any]]]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for m in messages:
        msg = m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m)
        if msg.role not in ("user", "assistant"):
            continue
        out.append({"role": msg.role, "content": msg.content})
    return out


class ConversationOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        model: Any,
        *,
        ocr: Any = None,
        ocr_cache: Optional[OcrCache] = None,
        normalizer: Optional[ImageNormalizer] = None,
        extractor: Any = None,
        pending: Optional[PendingAttachmentStore] = None,
        max_vision_images: int = 8,
    ) -> None:
        self.store = store
        self.model = model
        self.ocr = ocr
        self.ocr_cache = ocr_cache or getattr(ocr, "cache", None) or OcrCache(store)
        self.normalizer = normalizer or ImageNormalizer()
        self.extractor = extractor
        self.pending = pending or PendingAttachmentStore()
        self.max_vision_images = max_vision_images

    @classmethod
    def from_settings(cls, settings: AssistantSettings, store: DocumentStore) -> "ConversationOrchestrator":
        model = ChatModel(settings)
        cache = OcrCache(store)
        ocr = build_ocr_service(settings, cache)
        return cls(
            store,
            model,
            ocr=ocr,
            ocr_cache=cache,
            normalizer=ImageNormalizer(max_side=settings.max_image_side, quality=settings.image_quality),
            extractor=StructuredExtractor.from_settings(settings, model, ocr),
            pending=PendingAttachmentStore(ttl_seconds=settings.pending_ttl_seconds),
            max_vision_images=settings.max_vision_images,
        )

    async def send(
        self,
        messages: Sequence[Union[ChatMessage, Dict[str, Any]]],
        images: Sequence[bytes] = (),
        pdfs: Sequence[bytes] = (),
        session_id: str = "default",
    ) -> ChatReply:
        try:
            history = _history(messages)
            if images or pdfs:
                return await self._analyze(history, images, pdfs, session_id)
            return await self._execute(history, session_id)
        except CorruptImage as exc:
            LOG.warning(f"Session {session_id!r}: {exc}")
            return ChatReply(text=RETAKE_REPLY, phase=IDLE)
        except Exception:
            LOG.exception(f"Turn failed for session {session_id!r}")
            return ChatReply(text=FAILURE_REPLY, phase=FAILED)

    async def _ocr_images(self, images: Sequence[bytes]) -> List[str]:
        texts: List[str] = []
        for idx, img in enumerate(images):
            try:
                texts.append(await self.ocr.ocr_image(img))
            except (AutoserviceError, httpx.HTTPError, openai.APIError) as exc:
                LOG.warning(f"OCR failed for image {idx + 1}: {exc}; continuing without it")
                texts.append("")
        return texts

    async def _analyze(
        self,
        history: List[Dict[str, str]],
        images: Sequence[bytes],
        pdfs: Sequence[bytes],
        session_id: str,
    ) -> ChatReply:
        if pdfs and self.ocr is None:
            return ChatReply(text=NO_OCR_FOR_PDF_REPLY, phase=IDLE)

        normalized = [self.normalizer.normalize(raw) for raw in images]

        pages: List[str] = []
        for pdf in pdfs:
            pages += await self.ocr.ocr_pdf(pdf)

        ocr_texts: List[str] = []
        if normalized and self.ocr is not None:
            ocr_texts = await self._ocr_images(normalized)

        if pages:
            system = prompts.pdf_phase_system(pages)
            if any(ocr_texts):
                system += "\n\n" + prompts.ocr_block(ocr_texts)
        else:
            system = prompts.image_phase_system(ocr_texts)

        vision = normalized
        if len(normalized) > self.max_vision_images:
            LOG.info(f"{len(normalized)} images exceed the vision limit; relying on OCR text only")
            vision = []

        LOG.info(f"Session {session_id!r}: analyzing {len(normalized)} image(s), {len(pages)} PDF page(s)")
        text = await self.model.complete(system, history, images=vision)
        self.pending.put(session_id, PendingContext(images=normalized, ocr_texts=ocr_texts, pages=pages))
        return ChatReply(text=text or FALLBACK_REPLY, phase=AWAITING_CONFIRMATION)

    async def _execute(self, history: List[Dict[str, str]], session_id: str) -> ChatReply:
        ctx = self.pending.drain(session_id)
        vehicles = prompts.vehicle_context(self.store.vehicles())

        registry = build_registry(
            self.store,
            images=ctx.images if ctx else (),
            ocr_cache=self.ocr_cache,
            extractor=self.extractor,
        )
        if ctx is not None:
            registry = registry.without(SCAN_DOCUMENT)
            if ctx.pages:
                context = prompts.pdf_confirmation_context(ctx.pages, vehicles)
            else:
                context = prompts.image_confirmation_context(len(ctx.images), vehicles)
                if any(ctx.ocr_texts):
                    context += "\n\n" + prompts.ocr_block(ctx.ocr_texts)
            max_steps = ctx.step_limit()
        else:
            context = prompts.plain_context(vehicles)
            max_steps = DEFAULT_STEPS

        system = f"{prompts.SYSTEM_PROMPT}\n\n{context}"
        run = await self.model.run_tools(system, history, registry, max_steps=max_steps)

        results = [ToolResult(tool=name, data=outcome.to_payload()) for name, outcome in run.calls if outcome.success]
        text = run.text
        if not text and run.calls:
            text = "\n\n".join(summarize(outcome) for _, outcome in run.calls)
        return ChatReply(text=text or FALLBACK_REPLY, tool_results=results, phase=EXECUTING_TOOLS)
