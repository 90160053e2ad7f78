from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import sys
import uuid
from typing import Any, Dict, List, Sequence, Tuple

import requests

from ..config import load_settings
from ..domain.schedule import due_status, resolve_schedule
from ..errors import AutoserviceError
from ..logging import get_logger
from ..paths import expand_abs
from ..pipeline.image import ImageNormalizer, is_pdf
from ..store.db import DocumentStore

LOG = get_logger("cli-main")

DOCUMENT_TYPES = ["invoice", "vehicle_document", "service_booklet"]


def _read_file(path: str) -> bytes:
    with open(expand_abs(path), "rb") as fh:
        return fh.read()


def _split_attachments(paths: Sequence[str]) -> Tuple[List[bytes], List[bytes]]:
    images: List[bytes] = []
    pdfs: List[bytes] = []
    for path in paths:
        data = _read_file(path)
        (pdfs if is_pdf(data) else images).append(data)
    return images, pdfs


def _remote_turn(server: str, payload: Dict[str, Any], timeout: int) -> Dict[str, Any]:
    url = server.rstrip("/") + "/api/chat"
    r = requests.post(url, json=payload, timeout=timeout)
    r.raise_for_status()
    return r.json()


def _handle_chat(ns: argparse.Namespace) -> int:
    session_id = ns.session or uuid.uuid4().hex
    history: List[Dict[str, str]] = []
    attached: List[str] = []

    orchestrator = None
    if not ns.server:
        from ..chat.orchestrator import ConversationOrchestrator

        settings = load_settings(os.getcwd())
        orchestrator = ConversationOrchestrator.from_settings(settings, DocumentStore(root_dir=os.getcwd()))
    else:
        LOG.info(f"Using remote assistant at {ns.server}")

    print("Vehicle service assistant. '/attach <path>' adds a photo or PDF, '/quit' exits.")
    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        if not line:
            continue
        if line in ("/quit", "/exit"):
            return 0
        if line.startswith("/attach"):
            path = line[len("/attach"):].strip()
            if not path or not os.path.isfile(expand_abs(path)):
                print(f"File not found: {path}")
                continue
            attached.append(path)
            print(f"Attached {os.path.basename(path)} ({len(attached)} pending)")
            continue

        history.append({"role": "user", "content": line})
        images, pdfs = _split_attachments(attached)
        attached = []
        if orchestrator is None:
            payload = {
                "messages": history,
                "session_id": session_id,
                "attachments": [
                    {"kind": "image", "data": base64.b64encode(b).decode("ascii")} for b in images
                ] + [{"kind": "pdf", "data": base64.b64encode(b).decode("ascii")} for b in pdfs],
            }
            try:
                reply = _remote_turn(ns.server, payload, ns.timeout)
            except (requests.RequestException, ValueError) as exc:
                LOG.error(f"Remote chat call failed: {exc}")
                history.pop()
                continue
            text = reply.get("text") or ""
        else:
            result = asyncio.run(orchestrator.send(history, images=images, pdfs=pdfs, session_id=session_id))
            text = result.text
        history.append({"role": "assistant", "content": text})
        print(text)


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..web import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]
    app = create_app(root_dir=os.getcwd(), allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


async def _scan(path: str, doc_type: str) -> Dict[str, Any]:
    from ..chat.llm import ChatModel
    from ..pipeline.extraction import StructuredExtractor
    from ..pipeline.ocr import build_ocr_service
    from ..pipeline.ocr_cache import OcrCache

    settings = load_settings(os.getcwd())
    store = DocumentStore(root_dir=os.getcwd())
    model = ChatModel(settings)
    ocr = build_ocr_service(settings, OcrCache(store))
    extractor = StructuredExtractor.from_settings(settings, model, ocr)

    data = _read_file(path)
    if is_pdf(data):
        if ocr is None:
            raise AutoserviceError("PDF scanning needs an OCR backend (AUTOSERVICE_OCR_BACKEND)")
        pages = await ocr.ocr_pdf(data)
        result = await extractor.extract(doc_type, ocr_text="\n\n".join(pages))
    else:
        normalizer = ImageNormalizer(max_side=settings.max_image_side, quality=settings.image_quality)
        result = await extractor.extract(doc_type, image=normalizer.normalize(data))

    if result.ok:
        return {"ok": True, "strategy": result.strategy, "fields": result.value.model_dump()}
    return {"ok": False, "strategy": result.strategy, "error": result.error, "partial": result.partial}


def _handle_scan(ns: argparse.Namespace) -> int:
    try:
        out = asyncio.run(_scan(ns.file, ns.type))
    except AutoserviceError as exc:
        LOG.error(f"Scan failed: {exc}")
        return 1
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0 if out["ok"] else 1


def _handle_normalize(ns: argparse.Namespace) -> int:
    settings = load_settings(os.getcwd())
    normalizer = ImageNormalizer(max_side=settings.max_image_side, quality=settings.image_quality)
    try:
        out = normalizer.normalize(_read_file(ns.input))
    except AutoserviceError as exc:
        LOG.error(str(exc))
        return 2
    target = expand_abs(ns.output)
    os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
    with open(target, "wb") as fh:
        fh.write(out)
    LOG.info(f"Wrote: {target} ({len(out)} bytes)")
    return 0


def _handle_status(ns: argparse.Namespace) -> int:
    store = DocumentStore(root_dir=os.getcwd())
    vehicle = store.vehicle(ns.vehicle_id)
    if vehicle is None:
        LOG.error(f"Vehicle not found: {ns.vehicle_id}")
        return 1
    items = due_status(vehicle.mileage, store.maintenances(vehicle_id=vehicle.id), resolve_schedule(vehicle))
    print(f"{vehicle.display_name()} - {vehicle.mileage} km")
    for item in items:
        nxt = []
        if item.next_due_mileage:
            nxt.append(f"{item.next_due_mileage} km")
        if item.next_due_date:
            nxt.append(item.next_due_date)
        print(f"  {item.label:<30} {item.status:<8} {' / '.join(nxt)}")
    return 0


def _handle_export(ns: argparse.Namespace) -> int:
    store = DocumentStore(root_dir=os.getcwd())
    dump = store.export_json()
    target = expand_abs(ns.output)
    os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
    with open(target, "w", encoding="utf-8") as fh:
        fh.write(dump)
    LOG.info(f"Export written to: {target}")
    return 0


def _handle_import(ns: argparse.Namespace) -> int:
    store = DocumentStore(root_dir=os.getcwd())
    try:
        imported = store.import_json(_read_file(ns.file).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        LOG.error(f"Cannot import {ns.file}: {exc}")
        return 2
    for kind, count in imported.items():
        print(f"{kind}: {count}")
    return 0


def _handle_init_db(_: argparse.Namespace) -> int:
    store = DocumentStore(root_dir=os.getcwd())
    LOG.info(f"Database ready at: {store.db_path}")
    print(store.db_path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoservice",
        description="Conversational vehicle service assistant: invoices, maintenance and schedules.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Interactive chat in the terminal.")
    chat.add_argument("--server", help="Talk to a running 'autoservice serve' instead of running locally")
    chat.add_argument("--session", help="Session id (default: random per run)")
    chat.add_argument("--timeout", type=int, default=300, help="HTTP timeout in seconds for --server")
    chat.set_defaults(handler=_handle_chat)

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)

    scan = subparsers.add_parser("scan", help="Extract structured data from a photo or PDF and print JSON.")
    scan.add_argument("file")
    scan.add_argument("--type", choices=DOCUMENT_TYPES, default="invoice")
    scan.set_defaults(handler=_handle_scan)

    norm = subparsers.add_parser("normalize", help="Orient, downscale and re-encode a document photo.")
    norm.add_argument("input")
    norm.add_argument("output")
    norm.set_defaults(handler=_handle_normalize)

    status = subparsers.add_parser("status", help="Show the maintenance status of a vehicle.")
    status.add_argument("vehicle_id")
    status.set_defaults(handler=_handle_status)

    init_db = subparsers.add_parser("init-db", help="Create/ensure the database schema exists.")
    init_db.set_defaults(handler=_handle_init_db)

    export = subparsers.add_parser("export", help="Write all records as versioned JSON (backup).")
    export.add_argument("output", help="Target JSON file")
    export.set_defaults(handler=_handle_export)

    imp = subparsers.add_parser("import", help="Upsert records from an 'autoservice export' file.")
    imp.add_argument("file")
    imp.set_defaults(handler=_handle_import)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")
    args = build_parser().parse_args(provided)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
