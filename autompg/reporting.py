"""
Report rendering: regression comparison table, narrative figures, plots and
the Markdown document that ties them together.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import IntFlag
from pathlib import Path
from typing import Any, Dict, List, Optional

# Select a non-interactive backend before pyplot is imported anywhere.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.stats import gaussian_kde

from .modeling import NestedFitOutputs

logger = logging.getLogger(__name__)

# (threshold, stars), checked in order
SIGNIFICANCE_LEVELS: tuple[tuple[float, str], ...] = (
    (0.001, "***"),
    (0.01, "**"),
    (0.05, "*"),
)

COVARIATE_LABELS: dict[str, str] = {
    "displacement": "Displacement",
    "displacement_sq": "Displacement²",
    "weight": "Weight",
    "acceleration": "Acceleration",
    "model_year": "Model year",
    "const": "Constant",
}

DISPLACEMENT_REDUCTION: float = 0.10


def significance_stars(pvalue: Optional[float]) -> str:
    if pvalue is None or not math.isfinite(pvalue):
        return ""
    for threshold, stars in SIGNIFICANCE_LEVELS:
        if pvalue < threshold:
            return stars
    return ""


def _fmt_num(x: float, decimals: int) -> str:
    """Fixed notation, switching to scientific for very small magnitudes."""
    if x != 0 and abs(x) < 10 ** (-decimals):
        return f"{x:.2e}"
    return f"{x:.{decimals}f}"


def build_regression_table(nested: NestedFitOutputs, decimals: int = 3) -> str:
    """
    Side-by-side comparison table of all nested models.

    Layout:
      - One column per model, in specification order
      - Each covariate occupies two rows: estimate with stars, then (HC1 SE)
      - Covariates a model does not include are left blank
      - Constant last, then R² and N summary rows
      - Models that failed to fit show "failed" in every cell
    """
    ordered = nested.ordered()
    covariates: list[str] = []
    for spec, _ in ordered:
        for c in spec.covariates:
            if c not in covariates:
                covariates.append(c)
    covariates.append("const")

    header = [""] + [spec.name for spec, _ in ordered]
    body: list[list[str]] = []

    for cov in covariates:
        est_row = [COVARIATE_LABELS.get(cov, cov)]
        se_row = [""]
        for _, fit in ordered:
            if fit is None:
                est_row.append("failed")
                se_row.append("")
            elif cov in fit.params.index:
                coef = float(fit.params[cov])
                est_row.append(
                    _fmt_num(coef, decimals) + significance_stars(float(fit.pvalues[cov]))
                )
                se_row.append(f"({_fmt_num(float(fit.bse[cov]), decimals)})")
            else:
                est_row.append("")
                se_row.append("")
        body.append(est_row)
        body.append(se_row)

    r2_row = ["R²"] + [
        "-" if fit is None else f"{fit.rsquared:.3f}" for _, fit in ordered
    ]
    n_row = ["N"] + ["-" if fit is None else str(fit.nobs) for _, fit in ordered]

    all_rows = [header] + body + [r2_row, n_row]
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(header))]

    def _line(cells: list[str]) -> str:
        first = f"{cells[0]:<{widths[0]}}"
        rest = [f"{c:>{w}}" for c, w in zip(cells[1:], widths[1:])]
        return "  ".join([first] + rest)

    sep = "-" * len(_line(header))
    lines = [_line(header), sep]
    lines.extend(_line(r) for r in body)
    lines.append(sep)
    lines.append(_line(r2_row))
    lines.append(_line(n_row))
    lines.append(sep)
    lines.append("Heteroskedasticity-robust (HC1) standard errors in parentheses.")
    lines.append("* p<0.05, ** p<0.01, *** p<0.001")
    return "\n".join(lines)


@dataclass
class NarrativeFigures:
    n_evaluation: int
    mean_mpg: float
    mean_displacement: float
    min_displacement_coef: Optional[float]
    max_displacement_coef: Optional[float]
    # model name -> predicted MPG change for the displacement reduction at the mean
    mpg_change_at_mean: Dict[str, float] = field(default_factory=dict)
    reduction: float = DISPLACEMENT_REDUCTION


def mpg_change_for_displacement_reduction(
    params: pd.Series, mean_displacement: float, reduction: float = DISPLACEMENT_REDUCTION
) -> float:
    """
    Predicted change in MPG when displacement moves from its mean d0 to d0*(1-reduction),
    holding other covariates fixed. Uses the squared term when the model has one.
    """
    d0 = float(mean_displacement)
    d1 = d0 * (1.0 - reduction)
    change = float(params.get("displacement", 0.0)) * (d1 - d0)
    if "displacement_sq" in params.index:
        change += float(params["displacement_sq"]) * (d1**2 - d0**2)
    return change


def compute_narrative_figures(
    nested: NestedFitOutputs,
    df_eval: pd.DataFrame,
    reduction: float = DISPLACEMENT_REDUCTION,
) -> NarrativeFigures:
    mean_disp = float(df_eval["displacement"].mean())
    coefs = [
        float(fit.params["displacement"])
        for _, fit in nested.ordered()
        if fit is not None and "displacement" in fit.params.index
    ]
    changes = {
        spec.name: mpg_change_for_displacement_reduction(fit.params, mean_disp, reduction)
        for spec, fit in nested.ordered()
        if fit is not None
    }
    return NarrativeFigures(
        n_evaluation=int(len(df_eval)),
        mean_mpg=float(df_eval["mpg"].mean()),
        mean_displacement=mean_disp,
        min_displacement_coef=min(coefs) if coefs else None,
        max_displacement_coef=max(coefs) if coefs else None,
        mpg_change_at_mean=changes,
        reduction=reduction,
    )


# -------------------------
# Plots
# -------------------------
class PlotKind(IntFlag):
    SCATTER = 1 << 0
    SCATTER_BY_YEAR = 1 << 1
    HIST_DISPLACEMENT = 1 << 2
    HIST_MPG = 1 << 3

    NONE = 0
    ALL = SCATTER | SCATTER_BY_YEAR | HIST_DISPLACEMENT | HIST_MPG


@dataclass
class PlotParams:
    plot_kinds: PlotKind = PlotKind.ALL
    hist_bins: int = 20


def _plot_scatter(df: pd.DataFrame, output_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.scatter(
        df["displacement"],
        df["mpg"],
        s=20,
        color="#00FFFF",
        edgecolors="#003A3A",
        linewidths=0.3,
        alpha=0.6,
    )
    ax.set_xlabel("Displacement (cubic inches)")
    ax.set_ylabel("MPG")
    ax.set_title("MPG vs. displacement")
    ax.grid(True, alpha=0.2)
    fig.tight_layout()
    fig.savefig(output_path, format="svg")
    plt.close(fig)


def _plot_scatter_by_year(df: pd.DataFrame, output_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(8, 5))
    points = ax.scatter(
        df["displacement"],
        df["mpg"],
        c=df["model_year"],
        cmap="viridis",
        s=20,
        alpha=0.8,
    )
    cbar = fig.colorbar(points, ax=ax)
    cbar.set_label("Model year")
    ax.set_xlabel("Displacement (cubic inches)")
    ax.set_ylabel("MPG")
    ax.set_title("MPG vs. displacement by model year")
    ax.grid(True, alpha=0.2)
    fig.tight_layout()
    fig.savefig(output_path, format="svg")
    plt.close(fig)


def _plot_hist_density(
    values: pd.Series, label: str, bins: int, output_path: Path
) -> None:
    vals = values.astype(float).to_numpy()
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(vals, bins=bins, density=True, color="#00FFFF", alpha=0.35, label="Histogram")
    # KDE needs at least two distinct values
    if len(np.unique(vals)) > 1:
        kde = gaussian_kde(vals)
        grid = np.linspace(vals.min(), vals.max(), 200)
        ax.plot(grid, kde(grid), color="#FF9F0A", linewidth=2.0, label="Density")
    ax.set_xlabel(label)
    ax.set_ylabel("Density")
    ax.set_title(f"Distribution of {label.lower()}")
    ax.legend()
    fig.tight_layout()
    fig.savefig(output_path, format="svg")
    plt.close(fig)


def render_plots(
    df: pd.DataFrame,
    plot_params: PlotParams,
    short_hash: str,
    output_dir: Optional[str] = None,
) -> List[str]:
    """
    Write the requested plots as SVG files and return their paths.

    Filenames: plot-{short_hash}-{kind}.svg with kind lower-cased.
    """
    artifact_paths: list[str] = []
    base = Path(output_dir) if output_dir else Path(".")
    plt.style.use("dark_background")

    for kind in (
        PlotKind.SCATTER,
        PlotKind.SCATTER_BY_YEAR,
        PlotKind.HIST_DISPLACEMENT,
        PlotKind.HIST_MPG,
    ):
        if not (plot_params.plot_kinds & kind):
            continue
        path = base / f"plot-{short_hash}-{kind.name.lower()}.svg"
        if kind is PlotKind.SCATTER:
            _plot_scatter(df, path)
        elif kind is PlotKind.SCATTER_BY_YEAR:
            _plot_scatter_by_year(df, path)
        elif kind is PlotKind.HIST_DISPLACEMENT:
            _plot_hist_density(
                df["displacement"], "Displacement", plot_params.hist_bins, path
            )
        else:
            _plot_hist_density(df["mpg"], "MPG", plot_params.hist_bins, path)
        logger.info("Wrote plot %s", str(path))
        artifact_paths.append(str(path))

    return artifact_paths


# -------------------------
# Document
# -------------------------
def _fmt_vif(v: float) -> str:
    return "inf" if not math.isfinite(v) else f"{v:.2f}"


def assemble_report(
    counts: Dict[str, int],
    figures: NarrativeFigures,
    table_text: str,
    nested: NestedFitOutputs,
    vif_table: Dict[str, Dict[str, float]],
    vif_threshold: float,
    variance_checks: Dict[str, Dict[str, Any]],
    warnings: List[str],
    artifact_paths: List[str],
    source: str,
    short_hash: str,
) -> str:
    """Build the Markdown report."""
    parts: list[str] = []
    parts.append("# Fuel economy and engine displacement")
    parts.append("")
    parts.append(f"Source: `{source}`  ")
    parts.append(f"Run: `{short_hash}`")
    parts.append("")

    parts.append("## Data")
    parts.append("")
    parts.append(f"- Rows loaded: {counts.get('raw_rows', 0)}")
    parts.append(f"- After removing missing horsepower: {counts.get('cleaned_rows', 0)}")
    parts.append(f"- After keeping each car's latest model year: {counts.get('deduplicated_rows', 0)}")
    parts.append(f"- Exploration sample: {counts.get('exploration_rows', 0)}")
    parts.append(f"- Evaluation sample: {counts.get('evaluation_rows', 0)}")
    parts.append("")

    parts.append("## Key figures (evaluation sample)")
    parts.append("")
    parts.append(f"- N = {figures.n_evaluation}, mean MPG = {figures.mean_mpg:.2f}")
    parts.append(f"- Mean displacement = {figures.mean_displacement:.1f} cubic inches")
    if figures.min_displacement_coef is not None:
        parts.append(
            f"- Displacement coefficient ranges from {figures.min_displacement_coef:.4f} "
            f"to {figures.max_displacement_coef:.4f} across models"
        )
    pct = int(round(figures.reduction * 100))
    for name, change in figures.mpg_change_at_mean.items():
        parts.append(
            f"- Model {name}: a {pct}% cut in displacement at the mean changes MPG by {change:+.2f}"
        )
    parts.append("")

    parts.append("## Regression results")
    parts.append("")
    parts.append("```")
    parts.append(table_text)
    parts.append("```")
    parts.append("")
    for name, err in nested.errors.items():
        parts.append(f"- Model {name} was not estimated: {err}")
    if nested.errors:
        parts.append("")

    parts.append("## Diagnostics")
    parts.append("")
    parts.append(f"Variance inflation factors (flagged above {vif_threshold:g}):")
    parts.append("")
    for model_name, vifs in vif_table.items():
        cells = []
        for cov, v in vifs.items():
            mark = " (!)" if v > vif_threshold else ""
            cells.append(f"{COVARIATE_LABELS.get(cov, cov)}={_fmt_vif(v)}{mark}")
        parts.append(f"- {model_name}: " + ", ".join(cells))
    parts.append("")
    parts.append("Sample variances:")
    parts.append("")
    for col, check in variance_checks.items():
        status = "ok" if check["finite_positive"] else "NOT finite/positive"
        parts.append(f"- {col}: {check['variance']:.4g} ({status})")
    parts.append("")

    if warnings:
        parts.append("## Warnings")
        parts.append("")
        parts.extend(f"- {w}" for w in warnings)
        parts.append("")

    if artifact_paths:
        parts.append("## Figures (exploration sample)")
        parts.append("")
        for p in artifact_paths:
            parts.append(f"![{Path(p).stem}]({Path(p).name})")
        parts.append("")

    return "\n".join(parts)
