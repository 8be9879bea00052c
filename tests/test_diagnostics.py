import logging
import math

import numpy as np
import pandas as pd
import pytest

from autompg.modeling import (
    check_finite_variance,
    compute_vif,
    compute_vif_table,
    flag_multicollinearity,
)


def _orthogonal_df():
    return pd.DataFrame(
        {
            "x1": [1.0, -1.0, 1.0, -1.0, 1.0, -1.0, 1.0, -1.0],
            "x2": [1.0, 1.0, -1.0, -1.0, 1.0, 1.0, -1.0, -1.0],
        }
    )


def test_vif_is_one_for_uncorrelated_covariates():
    vifs = compute_vif(_orthogonal_df(), ["x1", "x2"])
    assert vifs["x1"] == pytest.approx(1.0)
    assert vifs["x2"] == pytest.approx(1.0)


def test_vif_is_one_for_single_covariate_model():
    assert compute_vif(_orthogonal_df(), ["x1"]) == {"x1": 1.0}


def test_vif_is_infinite_for_exact_linear_combination():
    df = _orthogonal_df().assign(x3=lambda d: d["x1"] + 2.0 * d["x2"])
    vifs = compute_vif(df, ["x1", "x2", "x3"])
    assert all(math.isinf(v) for v in vifs.values())


def test_vif_matches_auxiliary_regression_definition():
    rng = np.random.default_rng(0)
    a = rng.normal(size=300)
    b = 0.8 * a + rng.normal(scale=0.6, size=300)
    df = pd.DataFrame({"a": a, "b": b})

    r = np.corrcoef(a, b)[0, 1]
    expected = 1.0 / (1.0 - r**2)
    vifs = compute_vif(df, ["a", "b"])
    assert vifs["a"] == pytest.approx(expected, rel=1e-8)
    assert vifs["b"] == pytest.approx(expected, rel=1e-8)


def test_vif_agrees_with_statsmodels_on_constant_augmented_design():
    import statsmodels.api as sm
    from statsmodels.stats.outliers_influence import variance_inflation_factor

    rng = np.random.default_rng(7)
    a = rng.normal(size=200)
    b = 0.5 * a + rng.normal(size=200)
    c = rng.normal(size=200) - 0.3 * b
    df = pd.DataFrame({"a": a, "b": b, "c": c})

    X = sm.add_constant(df[["a", "b", "c"]]).to_numpy()
    vifs = compute_vif(df, ["a", "b", "c"])
    assert list(vifs) == ["a", "b", "c"]
    for i, col in enumerate(["a", "b", "c"], start=1):
        assert vifs[col] == pytest.approx(variance_inflation_factor(X, i), rel=1e-10)


def test_displacement_and_square_are_flagged():
    d = np.linspace(70, 455, 100)
    df = pd.DataFrame({"displacement": d, "displacement_sq": d**2})
    vifs = compute_vif(df, ["displacement", "displacement_sq"])
    assert set(flag_multicollinearity(vifs, threshold=4.0)) == {
        "displacement",
        "displacement_sq",
    }


def test_flag_threshold_is_strict():
    assert flag_multicollinearity({"a": 4.0, "b": 4.01, "c": float("inf")}) == ["b", "c"]


def test_vif_table_keys_follow_specs():
    from autompg.modeling import ModelSpec

    specs = [ModelSpec("m1", ("x1",)), ModelSpec("m2", ("x1", "x2"))]
    table = compute_vif_table(_orthogonal_df(), specs)
    assert list(table) == ["m1", "m2"]
    assert list(table["m2"]) == ["x1", "x2"]


def test_finite_variance_check(caplog):
    df = pd.DataFrame({"mpg": [10.0, 20.0, 30.0], "flat": [1.0, 1.0, 1.0]})
    with caplog.at_level(logging.WARNING):
        checks = check_finite_variance(df, ["mpg", "flat"])

    assert checks["mpg"]["finite_positive"] is True
    assert checks["mpg"]["variance"] == pytest.approx(100.0)
    assert checks["flat"]["finite_positive"] is False
    assert any("flat" in r.message for r in caplog.records)
