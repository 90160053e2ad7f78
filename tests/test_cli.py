import io
from pathlib import Path

import pytest
from PIL import Image

from autoservice.cli.main import build_parser, main
from autoservice.pipeline import image as image_mod
from autoservice.store import MAINTENANCES, VEHICLES, DocumentStore, Put

from conftest import make_image


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "README.md").write_text("marker", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_init_db_prints_database_path(project: Path, capsys):
    assert main(["init-db"]) == 0
    out = capsys.readouterr().out.strip()
    assert out.endswith("autoservice.sqlite3")
    assert Path(out).is_file()


def test_normalize_writes_portrait_grayscale(project: Path, monkeypatch):
    monkeypatch.setattr(image_mod.pytesseract, "image_to_osd", lambda img, output_type=None: {"rotate": 0, "orientation_conf": 0.0})
    src = project / "landscape.png"
    src.write_bytes(make_image(300, 100))
    assert main(["normalize", str(src), str(project / "out" / "page.img")]) == 0
    with Image.open(io.BytesIO((project / "out" / "page.img").read_bytes())) as img:
        assert img.size[1] > img.size[0]


def test_normalize_rejects_corrupt_input(project: Path):
    src = project / "broken.jpg"
    src.write_bytes(b"nope")
    assert main(["normalize", str(src), str(project / "x.img")]) == 2


def test_status_lists_schedule(project: Path, capsys):
    store = DocumentStore(root_dir=str(project))
    store.transact(
        [
            Put(VEHICLES, "v1", {"make": "VW", "model": "Golf", "mileage": 56000}),
            Put(
                MAINTENANCES,
                "m1",
                {"vehicle_id": "v1", "type": "oil_change", "done_at": "2024-01-10", "mileage_at_service": 40000},
            ),
        ]
    )
    assert main(["status", "v1"]) == 0
    out = capsys.readouterr().out
    assert "VW Golf - 56000 km" in out
    assert "overdue" in out
    assert main(["status", "missing"]) == 1


def test_scan_type_is_restricted():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["scan", "photo.jpg", "--type", "receipt"])
    ns = build_parser().parse_args(["scan", "photo.jpg", "--type", "service_booklet"])
    assert ns.type == "service_booklet"


def test_export_then_import_into_another_project(project: Path, tmp_path_factory, monkeypatch, capsys):
    DocumentStore(root_dir=str(project)).transact([Put(VEHICLES, "v1", {"make": "Audi", "model": "A4", "mileage": 120000})])
    backup = project / "backup" / "autoservice.json"
    assert main(["export", str(backup)]) == 0
    assert '"version": 1' in backup.read_text(encoding="utf-8")

    other = tmp_path_factory.mktemp("other")
    (other / "README.md").write_text("marker", encoding="utf-8")
    monkeypatch.chdir(other)
    capsys.readouterr()
    assert main(["import", str(backup)]) == 0
    assert "vehicles: 1" in capsys.readouterr().out
    assert DocumentStore(root_dir=str(other)).vehicle("v1").model == "A4"

    broken = other / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert main(["import", str(broken)]) == 2
