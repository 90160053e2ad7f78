from __future__ import annotations

import asyncio
import hashlib
from typing import Awaitable, Callable, Dict, Optional

from ..logging import get_logger
from ..store.db import DocumentStore

LOG = get_logger("ocr-cache")


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class OcrCache:
    """Content-addressed OCR text: memory first, then the document store.

    Entries are never invalidated; an image's bytes cannot change meaning.
    Concurrent first-time requests for the same image share one fetch.
    """

    def __init__(self, store: Optional[DocumentStore] = None) -> None:
        self.store = store
        self._memory: Dict[str, str] = {}
        self._inflight: Dict[str, "asyncio.Future[str]"] = {}

    def lookup(self, key: str) -> Optional[str]:
        text = self._memory.get(key)
        if text is not None:
            return text
        if self.store is not None:
            text = self.store.ocr_text(key)
            if text is not None:
                self._memory[key] = text
        return text

    def remember(self, key: str, text: str) -> None:
        self._memory[key] = text
        if self.store is not None:
            self.store.put_ocr_text(key, text)

    async def get_or_fetch(self, image: bytes, fetch: Callable[[], Awaitable[str]]) -> str:
        key = content_hash(image)
        cached = self.lookup(key)
        if cached is not None:
            LOG.debug(f"OCR cache hit {key[:12]}")
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            LOG.debug(f"OCR for {key[:12]} already in flight; awaiting it")
            return await asyncio.shield(pending)

        future: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            text = await fetch()
            self.remember(key, text)
            future.set_result(text)
            LOG.info(f"OCR cached {key[:12]} ({len(text)} chars)")
            return text
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Retrieve so the loop does not warn when no other caller was waiting.
            future.exception()
            raise
        finally:
            self._inflight.pop(key, None)
