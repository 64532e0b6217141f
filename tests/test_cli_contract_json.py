from __future__ import annotations

import math
from pathlib import Path

import pytest

from tests.helpers_cli import run_cli, run_cli_json
from tests.helpers_stl import cube_facets, cube_stl, stl_bytes


@pytest.fixture
def stl_dir(tmp_path: Path) -> Path:
    (tmp_path / "cube.stl").write_bytes(cube_stl())
    (tmp_path / "big.stl").write_bytes(cube_stl(30.0))
    (tmp_path / "broken.stl").write_bytes(stl_bytes(cube_facets()[:10], declared_count=100))
    return tmp_path


def _assert_finite_non_negative(value, label: str) -> None:
    assert isinstance(value, (int, float)) and not isinstance(value, bool), label
    assert math.isfinite(value), f"{label} should be finite, got {value}"
    assert value >= 0, f"{label} should be >= 0, got {value}"


def test_cli_json_single_file_contract(stl_dir: Path) -> None:
    returncode, payload, stderr = run_cli_json([str(stl_dir / "cube.stl"), "--material", "pla"], cwd=stl_dir)

    assert returncode == 0, stderr
    assert payload["success"] is True
    assert payload["count"] == 1
    assert payload["count_ok"] == 1
    assert payload["count_failed"] == 0
    assert payload["errors"] == []
    assert payload["currency"] == "INR"

    row = payload["per_object"][0]
    assert row["file"] == "cube.stl"
    assert row["priced"] is True
    assert row["weight_g"] == 2.0
    assert row["unit_cost"] == pytest.approx(18.0)
    assert row["total_cost"] == pytest.approx(18.0)
    assert row["facet_count"] == 12
    assert row["mesh_volume_mm3"] == pytest.approx(1.0)
    for key in ("volume_mm3", "mesh_volume_mm3", "weight_g", "surface_area_mm2", "unit_cost", "total_cost"):
        _assert_finite_non_negative(row[key], key)


def test_cli_qty_and_material(stl_dir: Path) -> None:
    returncode, payload, stderr = run_cli_json(
        [str(stl_dir / "big.stl"), "--material", "abs", "--qty", "3"], cwd=stl_dir
    )
    assert returncode == 0, stderr
    row = payload["per_object"][0]
    weight = 27000.0 * 0.30 * 1.5 * 1.04 / 1000.0
    assert row["weight_g"] == pytest.approx(weight)
    assert row["total_cost"] == pytest.approx(weight * 1.4 * 9 * 3)
    assert payload["summary"]["total_cost"] == pytest.approx(row["total_cost"])


def test_cli_broken_file_gets_fallback_and_exit_1(stl_dir: Path) -> None:
    returncode, payload, _ = run_cli_json(
        [str(stl_dir / "cube.stl"), str(stl_dir / "broken.stl")], cwd=stl_dir
    )

    assert returncode == 1
    assert payload["success"] is False
    assert payload["count"] == 2
    assert payload["count_ok"] == 1
    assert payload["count_failed"] == 1
    assert payload["errors"] == [
        {"file": "broken.stl", "kind": "truncated_file", "error": payload["errors"][0]["error"]}
    ]

    rows = {r["file"]: r for r in payload["per_object"]}
    assert rows["broken.stl"]["priced"] is False
    assert rows["broken.stl"]["unit_cost"] == 50.0
    assert payload["summary"]["total_cost"] == pytest.approx(18.0 + 50.0)


def test_cli_missing_file_reported(stl_dir: Path) -> None:
    returncode, payload, _ = run_cli_json([str(stl_dir / "absent.stl")], cwd=stl_dir)
    assert returncode == 1
    assert payload["count"] == 0
    assert payload["errors"][0]["kind"] == "read_error"


def test_cli_file_size_limit(stl_dir: Path) -> None:
    returncode, payload, _ = run_cli_json([str(stl_dir / "cube.stl"), "--max-file-mb", "0.0001"], cwd=stl_dir)
    assert returncode == 1
    assert "too large" in payload["errors"][0]["error"]


def test_cli_max_facets(stl_dir: Path) -> None:
    returncode, payload, _ = run_cli_json([str(stl_dir / "cube.stl"), "--max-facets", "4"], cwd=stl_dir)
    assert returncode == 1
    assert payload["errors"][0]["kind"] == "too_large"


def test_cli_unknown_material_exits_2(stl_dir: Path) -> None:
    completed = run_cli([str(stl_dir / "cube.stl"), "--material", "wood"], cwd=stl_dir)
    assert completed.returncode == 2


def test_cli_set_override(stl_dir: Path) -> None:
    returncode, payload, stderr = run_cli_json(
        [str(stl_dir / "cube.stl"), "--set", "weight_bounds_g.min=5", "--set", "rate_per_gram=10"], cwd=stl_dir
    )
    assert returncode == 0, stderr
    row = payload["per_object"][0]
    assert row["weight_g"] == 5.0
    assert row["unit_cost"] == pytest.approx(50.0)


def test_cli_bad_override_exits_2(stl_dir: Path) -> None:
    completed = run_cli([str(stl_dir / "cube.stl"), "--set", "weight_bounds_g.min=500"], cwd=stl_dir)
    assert completed.returncode == 2
    assert "weight_bounds_g" in completed.stderr


def test_cli_workers_deterministic(stl_dir: Path) -> None:
    files = [str(stl_dir / n) for n in ("cube.stl", "big.stl", "broken.stl")]
    _, serial, _ = run_cli_json(files, cwd=stl_dir)
    _, parallel, _ = run_cli_json([*files, "--workers", "2"], cwd=stl_dir)

    strip = lambda rows: [{k: v for k, v in r.items() if k != "calc_seconds"} for r in rows]
    assert [r["file"] for r in parallel["per_object"]] == ["big.stl", "broken.stl", "cube.stl"]
    assert strip(parallel["per_object"]) == strip(serial["per_object"])
    assert parallel["summary"] == serial["summary"]


def test_cli_text_report(stl_dir: Path) -> None:
    completed = run_cli([str(stl_dir / "cube.stl"), str(stl_dir / "big.stl"), "--material", "petg"], cwd=stl_dir)
    assert completed.returncode == 0, completed.stderr
    assert "File: cube.stl" in completed.stdout
    assert "PETG" in completed.stdout
    assert "TOTAL (2 files)" in completed.stdout


@pytest.mark.parametrize("value", ["0", "-1"])
def test_cli_non_positive_file_limit_exits_2(stl_dir: Path, value: str) -> None:
    completed = run_cli([str(stl_dir / "cube.stl"), "--max-file-mb", value], cwd=stl_dir)
    assert completed.returncode == 2
    assert "--max-file-mb" in completed.stderr
