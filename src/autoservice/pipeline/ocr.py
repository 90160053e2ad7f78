"""OCR backends: Mistral's hosted OCR API and a local Tesseract fallback.

Both return markdown-ish text per page. OcrService adds the content cache for
single images and the rate-limit retry for every remote call.
"""

from __future__ import annotations

import asyncio
import base64
import re
from typing import Any, Dict, List, Optional

import cv2
import fitz  # PyMuPDF
import httpx
import numpy as np
import pytesseract

from ..config import AssistantSettings
from ..errors import CorruptImage, OcrUnavailable, ProviderRejected, ProviderUnavailable
from ..logging import get_logger
from .image import to_data_uri
from .ocr_cache import OcrCache
from .retry import RetryPolicy, classify_error, with_retry

LOG = get_logger("ocr")

_TABLE_REF = re.compile(r"\[(tbl-\d+\.\w+)\]\(\1\)")


def substitute_tables(markdown: str, tables: List[Dict[str, Any]]) -> str:
    """Replace `[tbl-0.md](tbl-0.md)` placeholders with the table markdown."""
    by_id = {str(t.get("id")): str(t.get("content") or "") for t in tables or [] if t.get("id")}
    if not by_id:
        return markdown
    return _TABLE_REF.sub(lambda m: by_id.get(m.group(1), m.group(0)), markdown)


def pages_from_response(body: Dict[str, Any]) -> List[str]:
    pages = sorted(body.get("pages") or [], key=lambda p: int(p.get("index", 0)))
    return [substitute_tables(str(p.get("markdown") or ""), p.get("tables") or []) for p in pages]


class MistralOcr:
    """Client for `POST /v1/ocr` with tables returned as inline markdown."""

    name = "mistral"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.mistral.ai",
        model: str = "mistral-ocr-latest",
        timeout_seconds: float = 180.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = f"{base_url.rstrip('/')}/v1/ocr"
        self.model = model
        self.timeout = httpx.Timeout(connect=10.0, read=timeout_seconds, write=30.0, pool=10.0)
        self.transport = transport

    async def _post(self, document: Dict[str, Any]) -> List[str]:
        payload = {"model": self.model, "document": document, "table_format": "markdown"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.post(self.endpoint, headers=headers, json=payload)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                mapped = classify_error(exc)
                if isinstance(exc, httpx.HTTPStatusError):
                    status = exc.response.status_code
                    LOG.error(f"Mistral OCR HTTP {status}: {exc.response.text[:500]}")
                    if mapped is exc:
                        mapped = ProviderRejected(f"Mistral OCR rejected the request (HTTP {status})", status_code=status)
                if mapped is exc:
                    raise
                raise mapped from exc
        pages = pages_from_response(resp.json())
        LOG.debug(f"Mistral OCR returned {len(pages)} page(s)")
        return pages

    async def ocr_image(self, image: bytes) -> str:
        pages = await self._post({"type": "image_url", "image_url": to_data_uri(image)})
        return "\n\n".join(pages)

    async def ocr_pdf(self, pdf: bytes) -> List[str]:
        encoded = base64.b64encode(pdf).decode("ascii")
        return await self._post({"type": "document_url", "document_url": f"data:application/pdf;base64,{encoded}"})


def safe_binary(gray: np.ndarray) -> np.ndarray:
    """Adaptive threshold, falling back to Otsu when the page washes out."""
    ada = cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 31, 15)
    if (ada == 255).mean() > 0.98:
        otsu = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)[1]
        if (otsu == 255).mean() > 0.98:
            otsu = cv2.bitwise_not(otsu)
        return otsu
    return ada


class TesseractOcr:
    """Local OCR; slower and weaker on tables, but needs no API key."""

    name = "tesseract"

    def __init__(self, lang: str = "deu+eng", dpi: int = 200) -> None:
        self.lang = lang
        self.dpi = dpi

    def _read_image(self, image: bytes) -> str:
        gray = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
        if gray is None:
            raise CorruptImage("Image could not be decoded for OCR")
        bw = safe_binary(gray)
        try:
            return pytesseract.image_to_string(bw, lang=self.lang, config="--psm 6")
        except pytesseract.TesseractNotFoundError as exc:
            raise OcrUnavailable("tesseract binary is not installed") from exc
        except pytesseract.TesseractError as exc:
            raise ProviderUnavailable(f"tesseract failed: {exc}") from exc

    def _read_pdf(self, pdf: bytes) -> List[str]:
        pages: List[str] = []
        with fitz.open(stream=pdf, filetype="pdf") as doc:
            LOG.info(f"Opened PDF with {doc.page_count} page(s)")
            for page in doc:
                text = page.get_text("text") or ""
                if text.strip():
                    pages.append(text)
                    continue
                pix = page.get_pixmap(dpi=self.dpi, colorspace=fitz.csGRAY)
                pages.append(self._read_image(pix.tobytes("png")))
        return pages

    async def ocr_image(self, image: bytes) -> str:
        return await asyncio.to_thread(self._read_image, image)

    async def ocr_pdf(self, pdf: bytes) -> List[str]:
        return await asyncio.to_thread(self._read_pdf, pdf)


class OcrService:
    """OCR entry point used by the extractor and the orchestrator."""

    def __init__(self, backend: Any, cache: OcrCache, policy: RetryPolicy = RetryPolicy()) -> None:
        self.backend = backend
        self.cache = cache
        self.policy = policy

    async def ocr_image(self, image: bytes) -> str:
        async def fetch() -> str:
            return await with_retry(lambda: self.backend.ocr_image(image), self.policy, label="ocr image")

        return await self.cache.get_or_fetch(image, fetch)

    async def ocr_pdf(self, pdf: bytes) -> List[str]:
        # PDFs are rarely re-submitted; pages are not cached.
        return await with_retry(lambda: self.backend.ocr_pdf(pdf), self.policy, label="ocr pdf")


def build_ocr_service(settings: AssistantSettings, cache: OcrCache) -> Optional[OcrService]:
    """OCR service for the configured backend, or None when OCR is disabled."""
    policy = RetryPolicy(max_attempts=settings.retry_attempts, delays=settings.retry_delays)
    if settings.ocr_backend == "mistral" and settings.ocr_api_key:
        backend: Any = MistralOcr(
            settings.ocr_api_key,
            base_url=settings.ocr_base_url,
            model=settings.ocr_model,
            timeout_seconds=settings.request_timeout_seconds,
        )
    elif settings.ocr_backend == "tesseract":
        backend = TesseractOcr()
    else:
        LOG.info("OCR disabled")
        return None
    LOG.info(f"OCR backend: {backend.name}")
    return OcrService(backend, cache, policy)
