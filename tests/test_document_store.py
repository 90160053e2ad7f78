import json
from pathlib import Path

import pytest

from autoservice.errors import NotFound
from autoservice.store import INVOICES, MAINTENANCES, VEHICLES, Delete, DocumentStore, Patch, Put


def _seed(store: DocumentStore) -> None:
    store.transact(
        [
            Put(VEHICLES, "v1", {"make": "VW", "model": "Golf", "year": 2015, "mileage": 40000}),
            Put(
                INVOICES,
                "i1",
                {
                    "vehicle_id": "v1",
                    "workshop_name": "ATU",
                    "date": "2024-02-01",
                    "total_amount": 120.0,
                    "items": [{"description": "Ölwechsel", "category": "oil_change", "amount": 100.0}],
                },
            ),
            Put(
                MAINTENANCES,
                "m1",
                {"vehicle_id": "v1", "invoice_id": "i1", "type": "oil_change", "done_at": "2024-02-01"},
            ),
        ]
    )


def test_db_lives_under_var_of_project_root(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("marker", encoding="utf-8")
    store = DocumentStore(root_dir=str(tmp_path))
    assert store.db_path == str(tmp_path / "var" / "autoservice" / "autoservice.sqlite3")
    assert Path(store.db_path).is_file()


def test_typed_readers_round_trip_json_columns(store: DocumentStore) -> None:
    _seed(store)
    [invoice] = store.invoices("v1")
    assert invoice.items[0].description == "Ölwechsel"
    assert invoice.image_data == b""
    [entry] = store.maintenances(invoice_id="i1")
    assert entry.vehicle_id == "v1"
    assert store.vehicle("v1").created_at is not None


def test_failed_batch_writes_nothing(store: DocumentStore) -> None:
    with pytest.raises(ValueError):
        store.transact(
            [
                Put(VEHICLES, "v1", {"make": "VW", "model": "Golf"}),
                Put(VEHICLES, "v2", {"make": "VW", "model": "Polo", "colour": "red"}),
            ]
        )
    assert store.vehicles() == []


def test_patch_of_missing_record_raises_not_found(store: DocumentStore) -> None:
    with pytest.raises(NotFound):
        store.transact([Patch(VEHICLES, "nope", {"mileage": 10})])


def test_deleting_invoice_cascades_to_its_entries(store: DocumentStore) -> None:
    _seed(store)
    store.transact([Delete(INVOICES, "i1")])
    assert store.maintenances(vehicle_id="v1") == []
    assert store.vehicle("v1") is not None


def test_query_rejects_non_parent_filters(store: DocumentStore) -> None:
    with pytest.raises(ValueError):
        store.query(INVOICES, workshop_name="ATU")


def test_ocr_text_is_append_only(store: DocumentStore) -> None:
    store.put_ocr_text("abc", "first")
    store.put_ocr_text("abc", "second")
    assert store.ocr_text("abc") == "first"
    assert store.ocr_text("missing") is None
    assert store.counts()["ocr_cache"] == 1


def test_export_restores_into_empty_store(store: DocumentStore, tmp_path: Path) -> None:
    _seed(store)
    store.transact([Patch(INVOICES, "i1", {"image_data": b"\x00webp\xff", "ocr_cache_id": "h1"})])
    store.put_ocr_text("h1", "| Ölwechsel | 100,00 |")

    dump = store.export_json()
    target = DocumentStore(db_path=str(tmp_path / "restored.sqlite3"))
    imported = target.import_json(dump)

    assert imported == {VEHICLES: 1, INVOICES: 1, MAINTENANCES: 1, "ocr_cache": 1}
    invoice = target.invoice("i1")
    assert invoice.image_data == b"\x00webp\xff"
    assert invoice.items[0].description == "Ölwechsel"
    assert target.maintenances(invoice_id="i1")[0].id == "m1"
    assert target.ocr_text("h1") == "| Ölwechsel | 100,00 |"

    # A second import updates in place instead of duplicating.
    assert target.import_json(dump)[VEHICLES] == 1
    assert target.counts() == store.counts()


def test_import_skips_orphans_and_rejects_foreign_documents(store: DocumentStore) -> None:
    dump = {
        "version": 1,
        "exported_at": "2024-06-01T10:00:00+00:00",
        "vehicles": [{"id": "v1", "make": "VW", "model": "Golf", "mileage": 1000}],
        "invoices": [{"id": "i9", "vehicle_id": "ghost", "date": "2024-01-01"}],
        "maintenances": [{"make": "no id"}],
    }
    imported = store.import_json(json.dumps(dump))
    assert imported == {VEHICLES: 1, INVOICES: 0, MAINTENANCES: 0, "ocr_cache": 0}
    assert store.invoice("i9") is None

    with pytest.raises(ValueError):
        store.import_json(json.dumps({"vehicles": []}))
    with pytest.raises(ValueError):
        store.import_json(json.dumps({"version": 99, "exported_at": "x"}))
