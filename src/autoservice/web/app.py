from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, List, Optional, Tuple

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..chat.orchestrator import ConversationOrchestrator
from ..config import load_settings
from ..domain.schedule import due_status, resolve_schedule
from ..logging import get_logger
from ..paths import find_project_root
from ..store.db import DocumentStore


LOG = get_logger("web")


def _decode_attachment(item: Dict[str, Any]) -> Tuple[str, bytes]:
    data = str(item.get("data") or "")
    if data.startswith("data:") and "," in data:
        header, data = data.split(",", 1)
        kind = "pdf" if "application/pdf" in header else "image"
    else:
        kind = "pdf" if str(item.get("kind") or "").lower() == "pdf" else "image"
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Attachment {item.get('name') or ''} is not valid base64") from exc
    if not raw:
        raise HTTPException(status_code=400, detail="Attachment is empty")
    return kind, raw


def create_app(
    root_dir: Optional[str] = None,
    *,
    store: Optional[DocumentStore] = None,
    orchestrator: Optional[ConversationOrchestrator] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the vehicle API and the chat endpoint."""

    if store is None:
        store = DocumentStore(root_dir=find_project_root(root_dir))
    if orchestrator is None:
        orchestrator = ConversationOrchestrator.from_settings(load_settings(root_dir), store)

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": store.db_path, "counts": store.counts()})

    async def vehicles(_: Request) -> JSONResponse:
        return JSONResponse({"items": [v.to_dict() for v in store.vehicles()]})

    async def vehicle_detail(request: Request) -> JSONResponse:
        vehicle_id = request.path_params["vehicle_id"]
        vehicle = store.vehicle(vehicle_id)
        if vehicle is None:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        return JSONResponse(
            {
                "vehicle": vehicle.to_dict(),
                "invoices": [i.to_dict() for i in store.invoices(vehicle_id)],
                "maintenances": [m.to_dict() for m in store.maintenances(vehicle_id=vehicle_id)],
            }
        )

    async def vehicle_status(request: Request) -> JSONResponse:
        vehicle_id = request.path_params["vehicle_id"]
        vehicle = store.vehicle(vehicle_id)
        if vehicle is None:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        items = due_status(vehicle.mileage, store.maintenances(vehicle_id=vehicle_id), resolve_schedule(vehicle))
        return JSONResponse(
            {
                "vehicle_id": vehicle.id,
                "has_custom_schedule": vehicle.has_custom_schedule,
                "items": [i.to_dict() for i in items],
            }
        )

    async def invoice_ocr(request: Request) -> JSONResponse:
        invoice = store.invoice(request.path_params["invoice_id"])
        if invoice is None:
            raise HTTPException(status_code=404, detail="Invoice not found")
        text = store.ocr_text(invoice.ocr_cache_id) if invoice.ocr_cache_id else None
        if text is None:
            raise HTTPException(status_code=404, detail="No OCR text stored for this invoice")
        return JSONResponse({"invoice_id": invoice.id, "ocr_text": text})

    async def chat(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            raise HTTPException(status_code=400, detail="'messages' must be a list")
        if not all(isinstance(m, dict) for m in body["messages"]):
            raise HTTPException(status_code=400, detail="Every message must be an object")
        attachments = body.get("attachments") or []
        if not isinstance(attachments, list) or not all(isinstance(a, dict) for a in attachments):
            raise HTTPException(status_code=400, detail="'attachments' must be a list of objects")

        images: List[bytes] = []
        pdfs: List[bytes] = []
        for item in attachments:
            kind, raw = _decode_attachment(item)
            (pdfs if kind == "pdf" else images).append(raw)

        session_id = str(body.get("session_id") or request.headers.get("x-session-id") or "default")
        LOG.info(f"Chat turn: session={session_id} images={len(images)} pdfs={len(pdfs)}")
        reply = await orchestrator.send(body["messages"], images=images, pdfs=pdfs, session_id=session_id)
        return JSONResponse(reply.to_dict())

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/vehicles", vehicles, methods=["GET"]),
        Route("/api/vehicles/{vehicle_id:str}", vehicle_detail, methods=["GET"]),
        Route("/api/vehicles/{vehicle_id:str}/status", vehicle_status, methods=["GET"]),
        Route("/api/invoices/{invoice_id:str}/ocr", invoice_ocr, methods=["GET"]),
        Route("/api/chat", chat, methods=["POST"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]
