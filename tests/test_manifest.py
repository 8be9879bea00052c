import datetime
import json
from pathlib import Path

from autompg.main import (
    LoadParams,
    ModelParams,
    TieBreak,
    TransformParams,
    build_manifest_dict,
    build_run_identity,
)
from autompg.utils import (
    build_effective_parameters,
    canonical_json_hash,
    utc_timestamp_seconds,
    write_manifest,
)


def test_build_manifest_dict_structure():
    counts = {
        "raw_rows": 398,
        "cleaned_rows": 392,
        "deduplicated_rows": 302,
        "exploration_rows": 101,
        "evaluation_rows": 201,
    }
    effective_params = {"load": {"source": "x"}, "transform": {"seed": 3093}}
    manifest = build_manifest_dict(
        source="https://example.invalid/auto-mpg.data",
        counts=counts,
        effective_params=effective_params,
        hashes=("testhash", "fulltesthash"),
        artifact_paths=["plot-testhash-scatter.svg"],
        model_errors={"(4)": "rank deficient"},
    )

    assert manifest["version"] == "1"
    assert manifest["source"] == "https://example.invalid/auto-mpg.data"
    assert manifest["counts"] == counts
    assert manifest["effective_parameters"] == effective_params
    assert manifest["model_errors"] == {"(4)": "rank deficient"}
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"]["plot_svgs"] == ["plot-testhash-scatter.svg"]


def test_run_identity_is_stable_and_parameter_sensitive():
    load = LoadParams(source="https://example.invalid/auto-mpg.data")
    a = build_run_identity(load, TransformParams(), ModelParams())
    b = build_run_identity(load, TransformParams(), ModelParams())
    c = build_run_identity(load, TransformParams(seed=1), ModelParams())

    assert a[1] == b[1] and a[2] == b[2]
    assert len(a[1]) == 8
    assert a[2] != c[2]


def test_effective_parameters_are_json_primitives():
    params = build_effective_parameters(
        transform=TransformParams(tie_break=TieBreak.FIRST), model=ModelParams()
    )
    assert params["transform"]["tie_break"] == "FIRST"
    assert params["model"]["vif_threshold"] == 4.0
    assert params["model"]["specs"][0] == {"name": "(1)", "covariates": ["displacement"]}
    json.dumps(params)


def test_canonical_hash_ignores_key_order():
    assert canonical_json_hash({"a": 1, "b": 2}) == canonical_json_hash({"b": 2, "a": 1})


def test_write_manifest_replaces_non_finite_numbers(tmp_path: Path):
    path = tmp_path / "manifest.json"
    write_manifest(path, {"vif": float("inf"), "ok": 1.5})
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"vif": None, "ok": 1.5}


def test_manifest_timestamp_format():
    timestamp = utc_timestamp_seconds()
    assert timestamp.endswith("Z")
    assert "T" in timestamp
    datetime.datetime.fromisoformat(timestamp[:-1])
