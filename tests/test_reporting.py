from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from autompg.modeling import fit_nested_models
from autompg.reporting import (
    PlotKind,
    PlotParams,
    build_regression_table,
    compute_narrative_figures,
    mpg_change_for_displacement_reduction,
    render_plots,
    significance_stars,
)


def _make_cars(n=150, seed=9):
    rng = np.random.default_rng(seed)
    d = rng.uniform(70, 455, size=n)
    w = 1600 + 6.5 * d + rng.normal(0, 250, size=n)
    acc = rng.uniform(8, 25, size=n)
    yr = rng.integers(70, 83, size=n)
    mpg = 48 - 0.09 * d + 0.00012 * d**2 - 0.003 * w + 0.4 * (yr - 76) + rng.normal(0, 2.5, size=n)
    return pd.DataFrame(
        {
            "mpg": mpg,
            "displacement": d,
            "displacement_sq": d**2,
            "weight": w,
            "acceleration": acc,
            "model_year": yr,
        }
    )


@pytest.mark.parametrize(
    "p, stars",
    [(0.0001, "***"), (0.001, "**"), (0.005, "**"), (0.01, "*"), (0.049, "*"), (0.05, ""), (0.5, ""), (None, ""), (float("nan"), "")],
)
def test_significance_stars_thresholds(p, stars):
    assert significance_stars(p) == stars


def test_regression_table_layout():
    nested = fit_nested_models(_make_cars())
    text = build_regression_table(nested)
    lines = text.splitlines()

    header = lines[0]
    for name in ("(1)", "(2)", "(3)", "(4)"):
        assert name in header
    assert any(line.startswith("Displacement ") for line in lines)
    assert any(line.startswith("Model year") for line in lines)
    assert any(line.startswith("R²") for line in lines)
    n_line = next(line for line in lines if line.startswith("N "))
    assert n_line.split()[1:] == ["150"] * 4
    # standard errors sit on the row below each estimate, in parentheses
    disp_idx = next(i for i, line in enumerate(lines) if line.startswith("Displacement "))
    assert lines[disp_idx + 1].strip().startswith("(")
    assert "*" in lines[disp_idx]
    assert "HC1" in text


def test_regression_table_blank_for_absent_covariates_and_failed_models():
    df = _make_cars().assign(weight=lambda d: 2.0 * d["displacement"])
    nested = fit_nested_models(df)
    text = build_regression_table(nested)
    lines = text.splitlines()

    weight_line = next(line for line in lines if line.startswith("Weight"))
    assert weight_line.split()[1:] == ["failed", "failed"]
    n_line = next(line for line in lines if line.startswith("N "))
    assert n_line.split()[1:] == ["150", "150", "-", "-"]


def test_mpg_change_linear_and_quadratic():
    linear = pd.Series({"const": 40.0, "displacement": -0.1})
    assert mpg_change_for_displacement_reduction(linear, 200.0) == pytest.approx(2.0)

    quad = pd.Series({"const": 40.0, "displacement": -0.2, "displacement_sq": 0.0002})
    # -0.2 * (180 - 200) + 0.0002 * (180^2 - 200^2)
    assert mpg_change_for_displacement_reduction(quad, 200.0) == pytest.approx(2.48)


def test_narrative_figures():
    df = _make_cars()
    nested = fit_nested_models(df)
    figs = compute_narrative_figures(nested, df)

    coefs = [fit.params["displacement"] for _, fit in nested.ordered()]
    assert figs.n_evaluation == 150
    assert figs.mean_mpg == pytest.approx(df["mpg"].mean())
    assert figs.mean_displacement == pytest.approx(df["displacement"].mean())
    assert figs.min_displacement_coef == pytest.approx(min(coefs))
    assert figs.max_displacement_coef == pytest.approx(max(coefs))
    assert list(figs.mpg_change_at_mean) == ["(1)", "(2)", "(3)", "(4)"]
    # a displacement cut raises predicted MPG in the simple model
    assert figs.mpg_change_at_mean["(1)"] > 0


def test_render_plots_writes_requested_svgs(tmp_path: Path):
    df = _make_cars(n=40)
    paths = render_plots(df, PlotParams(), "abcd1234", output_dir=str(tmp_path))

    assert len(paths) == 4
    for p in paths:
        assert Path(p).exists()
        assert Path(p).suffix == ".svg"
        assert "abcd1234" in Path(p).name


def test_render_plots_respects_kinds(tmp_path: Path):
    df = _make_cars(n=40)
    params = PlotParams(plot_kinds=PlotKind.SCATTER_BY_YEAR | PlotKind.HIST_MPG)
    paths = render_plots(df, params, "h", output_dir=str(tmp_path))
    names = [Path(p).name for p in paths]
    assert names == ["plot-h-scatter_by_year.svg", "plot-h-hist_mpg.svg"]

    assert render_plots(df, PlotParams(plot_kinds=PlotKind.NONE), "h", str(tmp_path)) == []
