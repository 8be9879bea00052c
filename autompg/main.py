#!/usr/bin/env python3
"""
Auto-MPG displacement study, written as a chain of pure pipeline stages.

Stages:
- load_auto_mpg()
- clean_auto_mpg()
- deduplicate_latest_year()
- split_exploration_evaluation()
- model_and_diagnose()

Each stage takes a DataFrame and returns a new one; inputs are never mutated.
_orchestrate() wires the stages together with reporting and writes the run
directory. main() is the CLI entry point.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from sklearn.model_selection import train_test_split

from .data_loader import (
    COLUMN_NAMES,
    DEFAULT_TIMEOUT_SECONDS,
    AutoMpgReader,
    DataLoadError,
)
from .modeling import (
    DEFAULT_VIF_THRESHOLD,
    NESTED_SPECS,
    OUTCOME,
    ModelSpec,
    NestedFitOutputs,
    check_finite_variance,
    compute_vif_table,
    fit_nested_models,
    flag_multicollinearity,
)
from .records import RECORD_DTYPES, derive_columns, records_from_frame
from .reporting import (
    PlotKind,
    PlotParams,
    assemble_report,
    build_regression_table,
    compute_narrative_figures,
    render_plots,
)
from .utils import (
    build_effective_parameters,
    canonical_json_hash,
    ensure_run_dir,
    normalize_source,
    utc_timestamp_seconds,
    write_manifest,
    write_text_report,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULT_SOURCE: str = (
    "https://archive.ics.uci.edu/ml/machine-learning-databases/auto-mpg/auto-mpg.data"
)
MISSING_MARKER: str = "?"
EXPECTED_MISSING_HORSEPOWER: int = 6
DEFAULT_SPLIT_RATIO: float = 0.333
DEFAULT_SEED: int = 3093

EXPLORATION: str = "exploration"
EVALUATION: str = "evaluation"


class TieBreak(Enum):
    """
    How deduplicate_latest_year() treats several rows sharing a car name and its
    maximum model year.

    - KEEP_ALL: pass all tied rows through unfiltered.
    - FIRST:    keep only the first tied row in input order.
    """

    KEEP_ALL = auto()
    FIRST = auto()


class StageResult:
    """Container for pipeline-stage results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        self.original_rows: int = 0
        self.output_rows: int = 0
        self.excluded_rows: int = 0

        self.warnings: list[str] = []
        self.events: list[str] = []
        self.metrics: dict[str, int | float | str] = {}

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        import time

        self.started_at = time.perf_counter()

    def stop(self) -> None:
        import time

        self.finished_at = time.perf_counter()
        if self.started_at is not None:
            self.elapsed_ms = (self.finished_at - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        """Add an info-level event message."""
        self.events.append(message)
        logger.info(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        self.metrics[name] = value

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.output_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


# -------------------------
# Parameters
# -------------------------
@dataclass
class LoadParams:
    """
    Attributes:
        source: http(s) URL or local path of the whitespace-delimited auto-mpg table.
        timeout: network timeout in seconds for remote sources.
    """

    source: str = DEFAULT_SOURCE
    timeout: float = DEFAULT_TIMEOUT_SECONDS


@dataclass
class TransformParams:
    expected_missing: int = EXPECTED_MISSING_HORSEPOWER
    tie_break: TieBreak = TieBreak.KEEP_ALL
    split_ratio: float = DEFAULT_SPLIT_RATIO
    seed: int = DEFAULT_SEED


@dataclass
class ModelParams:
    specs: Tuple[ModelSpec, ...] = NESTED_SPECS
    vif_threshold: float = DEFAULT_VIF_THRESHOLD


@dataclass
class SplitOutputs:
    df_all: pd.DataFrame
    df_exploration: pd.DataFrame
    df_evaluation: pd.DataFrame


@dataclass
class ModelOutputs:
    nested: NestedFitOutputs
    vif_table: Dict[str, Dict[str, float]]
    vif_flags: Dict[str, List[str]]
    variance_checks: Dict[str, Dict[str, Any]]
    warnings: List[str] = field(default_factory=list)


def get_default_params() -> tuple[LoadParams, TransformParams, ModelParams, PlotParams]:
    """Policy defaults for every parameter group."""
    return LoadParams(), TransformParams(), ModelParams(), PlotParams()


# -------------------------
# Stages
# -------------------------
def load_auto_mpg(params: LoadParams) -> pd.DataFrame:
    """
    Load the raw table with column names assigned; horsepower stays textual.

    Raises DataFetchError / SchemaError (both DataLoadError) on failure.
    """
    with AutoMpgReader(params.source, timeout=params.timeout) as reader:
        df = reader.read_frame()
    logger.info(f"Loaded {len(df)} raw rows")
    return df


def clean_auto_mpg(
    df: pd.DataFrame,
    expected_missing: int = EXPECTED_MISSING_HORSEPOWER,
    result: Optional[StageResult] = None,
) -> pd.DataFrame:
    """
    Remove rows with missing horsepower, coerce types, add derived columns and
    drop 'origin'.

    A dropped-row count different from expected_missing is reported as a warning
    and processing continues with the rows actually missing. Every remaining row
    is validated as a CarRecord; a non-positive cylinders, horsepower or weight
    raises ValueError.
    """
    result = result if result is not None else StageResult(label="clean")
    result.start()
    result.original_rows = len(df)

    missing_cols = [c for c in COLUMN_NAMES if c not in df.columns]
    if missing_cols:
        raise ValueError(
            f"Missing required columns: {', '.join(missing_cols)}. Found columns: {list(df.columns)}"
        )

    hp = df["horsepower"]
    is_marker = hp.astype(str).str.strip().eq(MISSING_MARKER)
    df_work = df.assign(horsepower=hp.where(~is_marker)).dropna(subset=["horsepower"])

    dropped = result.original_rows - len(df_work)
    result.add_metric("missing_horsepower_rows", dropped)
    if dropped != expected_missing:
        result.add_warning(
            f"Expected {expected_missing} rows with missing horsepower, found {dropped}"
        )

    df_work = (
        df_work.assign(
            horsepower=lambda d: pd.to_numeric(d["horsepower"].astype(str).str.strip())
        )
        .drop(columns=["origin"])
        .astype(RECORD_DTYPES)
    )
    records = records_from_frame(df_work)
    result.add_metric("validated_records", len(records))
    df_work = derive_columns(df_work).reset_index(drop=True)

    result.output_rows = len(df_work)
    result.excluded_rows = dropped
    result.stop()
    logger.info(result.summarize())
    return df_work


def deduplicate_latest_year(
    df: pd.DataFrame,
    tie_break: TieBreak = TieBreak.KEEP_ALL,
    result: Optional[StageResult] = None,
) -> pd.DataFrame:
    """
    Keep, for each car_name (exact match), the rows at that name's maximum model_year.
    Ties at the maximum year are handled per tie_break. Input order is preserved.
    """
    result = result if result is not None else StageResult(label="deduplicate")
    result.start()
    result.original_rows = len(df)

    max_year = df.groupby("car_name", sort=False)["model_year"].transform("max")
    df_work = df.loc[df["model_year"] == max_year]

    n_ties = int(df_work.duplicated(subset=["car_name"], keep=False).sum())
    result.add_metric("rows_in_max_year_ties", n_ties)
    if tie_break is TieBreak.FIRST:
        df_work = df_work.drop_duplicates(subset=["car_name"], keep="first")
    elif n_ties:
        result.add_event(f"{n_ties} rows share a car name and its latest year; kept all")

    df_work = df_work.reset_index(drop=True)
    result.output_rows = len(df_work)
    result.excluded_rows = result.original_rows - result.output_rows
    result.stop()
    logger.info(result.summarize())
    return df_work


def split_exploration_evaluation(
    df: pd.DataFrame,
    ratio: float = DEFAULT_SPLIT_RATIO,
    seed: int = DEFAULT_SEED,
) -> SplitOutputs:
    """
    Annotate each row with a dense 1-based row_id (input order) and a 'sample' label.

    About ratio*N ids (rounded up) are drawn into the exploration sample with a
    seeded shuffle; the rest form the evaluation sample. Membership depends only
    on (seed, N, ratio), so identical inputs always give the identical partition.
    """
    if not 0.0 < ratio < 1.0:
        raise ValueError(f"Split ratio must be in (0, 1), got {ratio}")
    if len(df) < 2:
        raise ValueError(f"Too few rows to split (found {len(df)}, need at least 2)")
    n_exploration = math.ceil(ratio * len(df))
    if not 1 <= n_exploration <= len(df) - 1:
        raise ValueError(
            f"Split ratio {ratio} leaves an empty sample for {len(df)} rows "
            f"(exploration would hold {n_exploration})"
        )

    row_ids = list(range(1, len(df) + 1))
    _, exploration_ids = train_test_split(
        row_ids, test_size=ratio, random_state=seed, shuffle=True
    )
    exploration = set(exploration_ids)

    df_all = df.reset_index(drop=True).assign(row_id=row_ids)
    df_all = df_all.assign(
        sample=df_all["row_id"].map(lambda i: EXPLORATION if i in exploration else EVALUATION)
    )
    df_exploration = df_all.loc[df_all["sample"] == EXPLORATION].reset_index(drop=True)
    df_evaluation = df_all.loc[df_all["sample"] == EVALUATION].reset_index(drop=True)

    logger.info(
        f"Split {len(df_all)} rows: exploration={len(df_exploration)}, "
        f"evaluation={len(df_evaluation)} (ratio={ratio}, seed={seed})"
    )
    return SplitOutputs(
        df_all=df_all, df_exploration=df_exploration, df_evaluation=df_evaluation
    )


def model_and_diagnose(df_eval: pd.DataFrame, params: ModelParams) -> ModelOutputs:
    """Fit the nested models on the evaluation sample and compute diagnostics."""
    nested = fit_nested_models(df_eval, params.specs, outcome=OUTCOME)
    warnings: list[str] = [
        f"Model {name} not estimated: {err}" for name, err in nested.errors.items()
    ]

    fitted_specs = [s for s in params.specs if s.name in nested.fits]
    vif_table = compute_vif_table(df_eval, fitted_specs)
    vif_flags = {
        name: flag_multicollinearity(vifs, params.vif_threshold)
        for name, vifs in vif_table.items()
    }
    for name, flagged in vif_flags.items():
        if flagged:
            logger.info(
                f"Model {name}: VIF above {params.vif_threshold:g} for {', '.join(flagged)}"
            )

    columns: list[str] = [OUTCOME]
    for spec in params.specs:
        columns.extend(
            c for c in spec.covariates if c not in columns and c in df_eval.columns
        )
    variance_checks = check_finite_variance(df_eval, columns)
    for col, check in variance_checks.items():
        if not check["finite_positive"]:
            warnings.append(f"Variance of '{col}' is not finite and positive")

    return ModelOutputs(
        nested=nested,
        vif_table=vif_table,
        vif_flags=vif_flags,
        variance_checks=variance_checks,
        warnings=warnings,
    )


# -------------------------
# Run identity / manifest
# -------------------------
def build_run_identity(
    load: LoadParams, trans: TransformParams, model: ModelParams
) -> tuple[str, str, str, dict]:
    """
    Returns (normalized_source, short_hash, full_hash, effective_params)
    """
    source = normalize_source(load.source)
    effective_params = build_effective_parameters(
        load=load, transform=trans, model=model
    )
    canonical_payload = {"source": source, "effective_parameters": effective_params}
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return source, short_hash, full_hash, effective_params


def build_manifest_dict(
    source: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
    model_errors: Optional[dict] = None,
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "source": source,
        "counts": {k: int(v) for k, v in counts.items()},
        "effective_parameters": effective_params,
        "model_errors": dict(model_errors or {}),
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": {"plot_svgs": artifact_paths},
    }


def _orchestrate(
    params_load: LoadParams,
    params_transform: TransformParams,
    params_model: ModelParams,
    params_plot: PlotParams,
    output_base: Path | str = "output",
) -> Path:
    """
    Run the full pipeline and write report, plots and manifest into a fresh run
    directory. Returns the report path.
    """
    source, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_transform, params_model
    )

    df_raw = load_auto_mpg(params_load)

    clean_result = StageResult(label="clean")
    df_clean = clean_auto_mpg(
        df_raw, params_transform.expected_missing, result=clean_result
    )
    dedup_result = StageResult(label="deduplicate")
    df_dedup = deduplicate_latest_year(
        df_clean, params_transform.tie_break, result=dedup_result
    )
    split = split_exploration_evaluation(
        df_dedup, params_transform.split_ratio, params_transform.seed
    )
    modeled = model_and_diagnose(split.df_evaluation, params_model)

    table_text = build_regression_table(modeled.nested)
    figures = compute_narrative_figures(modeled.nested, split.df_evaluation)

    run_dir = ensure_run_dir(output_base)
    artifact_paths = render_plots(
        split.df_exploration, params_plot, short_hash, output_dir=str(run_dir)
    )

    counts = {
        "raw_rows": len(df_raw),
        "cleaned_rows": len(df_clean),
        "deduplicated_rows": len(df_dedup),
        "exploration_rows": len(split.df_exploration),
        "evaluation_rows": len(split.df_evaluation),
    }
    warnings = clean_result.warnings + dedup_result.warnings + modeled.warnings

    report = assemble_report(
        counts=counts,
        figures=figures,
        table_text=table_text,
        nested=modeled.nested,
        vif_table=modeled.vif_table,
        vif_threshold=params_model.vif_threshold,
        variance_checks=modeled.variance_checks,
        warnings=warnings,
        artifact_paths=artifact_paths,
        source=source,
        short_hash=short_hash,
    )
    report_path = write_text_report(report, run_dir, short_hash)

    manifest = build_manifest_dict(
        source=source,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths + [str(report_path)],
        model_errors=modeled.nested.errors,
    )
    write_manifest(run_dir / f"manifest-{short_hash}.json", manifest)

    print(table_text)
    logger.info(f"Report written to {report_path}")
    return report_path


# -------------------------
# CLI
# -------------------------
def _build_cli_parser():
    import argparse

    d_load, d_trans, d_model, _ = get_default_params()
    parser = argparse.ArgumentParser(
        prog="autompg",
        description="Auto-MPG displacement study (load -> clean -> dedupe -> split -> model -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also AUTOMPG_DEBUG=1).",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--source", default=d_load.source, help="URL or local path of the data table."
    )
    g_load.add_argument(
        "--timeout", type=float, default=d_load.timeout, help="Fetch timeout (seconds)."
    )

    g_tr = parser.add_argument_group("TransformParams")
    g_tr.add_argument(
        "--expected-missing",
        type=int,
        default=d_trans.expected_missing,
        help="Expected number of rows with missing horsepower.",
    )
    g_tr.add_argument(
        "--tie-break",
        choices=[t.name for t in TieBreak],
        default=d_trans.tie_break.name,
        help="Handling of rows tied at a car's latest model year.",
    )
    g_tr.add_argument(
        "--split-ratio",
        type=float,
        default=d_trans.split_ratio,
        help="Share of rows drawn into the exploration sample.",
    )
    g_tr.add_argument("--seed", type=int, default=d_trans.seed, help="Split seed.")

    g_model = parser.add_argument_group("ModelParams")
    g_model.add_argument(
        "--vif-threshold",
        type=float,
        default=d_model.vif_threshold,
        help="VIF above which a covariate is flagged.",
    )

    g_out = parser.add_argument_group("Output")
    g_out.add_argument(
        "--output-dir", default="output", help="Base directory for run outputs."
    )
    g_out.add_argument(
        "--no-plots", action="store_true", help="Skip writing plot SVGs."
    )
    return parser


def _args_to_params(
    args,
) -> tuple[LoadParams, TransformParams, ModelParams, PlotParams]:
    """Build parameter objects from parsed CLI args."""
    if not 0.0 < args.split_ratio < 1.0:
        raise ValueError(f"Invalid --split-ratio: {args.split_ratio} (must be in (0, 1))")
    if args.expected_missing < 0:
        raise ValueError("Invalid --expected-missing: must be a non-negative integer")
    if args.timeout <= 0:
        raise ValueError("Invalid --timeout: must be positive")

    load = LoadParams(source=args.source, timeout=args.timeout)
    transform = TransformParams(
        expected_missing=args.expected_missing,
        tie_break=TieBreak[args.tie_break],
        split_ratio=args.split_ratio,
        seed=args.seed,
    )
    model = ModelParams(vif_threshold=args.vif_threshold)
    plot = PlotParams(plot_kinds=PlotKind.NONE if args.no_plots else PlotKind.ALL)
    return load, transform, model, plot


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    argv = list(sys.argv[1:] if argv is None else argv)
    parser = _build_cli_parser()
    args = parser.parse_args(argv)

    if args.print_defaults:
        import json

        d_load, d_trans, d_model, d_plot = get_default_params()
        payload = build_effective_parameters(
            load=d_load, transform=d_trans, model=d_model, plot=d_plot
        )
        print(json.dumps(payload, indent=2))
        return

    debug_mode = bool(args.debug or os.getenv("AUTOMPG_DEBUG", "") == "1")
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params = _args_to_params(args)
        _orchestrate(*params, output_base=args.output_dir)
    except (FileNotFoundError, ValueError, DataLoadError) as e:
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set AUTOMPG_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
