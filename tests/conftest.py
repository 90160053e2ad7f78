from __future__ import annotations

import io
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from PIL import Image

from autoservice.store import DocumentStore


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return DocumentStore(root_dir=str(tmp_path))


def make_image(width: int = 60, height: int = 80, color: str = "white", fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def tool_call(name: str, arguments: Dict[str, Any], call_id: Optional[str] = None) -> SimpleNamespace:
    return SimpleNamespace(
        id=call_id or f"call_{name}",
        type="function",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


def completion(content: str = "", tool_calls: Optional[List[SimpleNamespace]] = None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls or None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeCompletions:
    """Scripted stand-in for `client.chat.completions`."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.responses:
            raise AssertionError("FakeCompletions ran out of scripted responses")
        nxt = self.responses.pop(0)
        if isinstance(nxt, BaseException):
            raise nxt
        return nxt


class FakeClient:
    def __init__(self, responses: List[Any]) -> None:
        self.completions = FakeCompletions(responses)
        self.chat = SimpleNamespace(completions=self.completions)


class FakeOcr:
    """OCR double: fixed text per image and per PDF, counting calls."""

    def __init__(self, text: str = "OCR TEXT", pages: Optional[List[str]] = None) -> None:
        self.text = text
        self.pages = pages or ["page one"]
        self.image_calls = 0
        self.pdf_calls = 0

    async def ocr_image(self, image: bytes) -> str:
        self.image_calls += 1
        return self.text

    async def ocr_pdf(self, pdf: bytes) -> List[str]:
        self.pdf_calls += 1
        return list(self.pages)
