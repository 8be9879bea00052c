"""
Nested OLS fits of MPG on displacement and covariates, with HC1 robust
standard errors, VIF multicollinearity diagnostics and variance checks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

logger = logging.getLogger(__name__)

OUTCOME: str = "mpg"
DEFAULT_VIF_THRESHOLD: float = 4.0

# 1 - R² at or below this is treated as an exact linear dependence (VIF = inf).
_EXACT_DEPENDENCE_TOL: float = 1e-10


@dataclass(frozen=True)
class ModelSpec:
    name: str
    covariates: Tuple[str, ...]


NESTED_SPECS: Tuple[ModelSpec, ...] = (
    ModelSpec("(1)", ("displacement",)),
    ModelSpec("(2)", ("displacement", "displacement_sq")),
    ModelSpec("(3)", ("displacement", "displacement_sq", "weight")),
    ModelSpec(
        "(4)",
        ("displacement", "displacement_sq", "weight", "acceleration", "model_year"),
    ),
)


class RankDeficientError(ValueError):
    """Raised when a design matrix does not have full column rank."""

    pass


@dataclass
class FittedModel:
    """
    One fitted specification.

    params/bse/pvalues are indexed by ["const", *covariates]; bse and pvalues
    come from the HC1 covariance, bse_classical from the plain OLS covariance.
    """

    name: str
    covariates: Tuple[str, ...]
    params: pd.Series
    bse: pd.Series
    pvalues: pd.Series
    bse_classical: pd.Series
    rsquared: float
    rsquared_adj: float
    nobs: int
    results: Any = field(default=None, repr=False)

    @property
    def df_resid(self) -> int:
        return int(self.nobs - len(self.params))


@dataclass
class NestedFitOutputs:
    fits: Dict[str, FittedModel] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    specs: Tuple[ModelSpec, ...] = NESTED_SPECS

    def ordered(self) -> List[Tuple[ModelSpec, Optional[FittedModel]]]:
        """(spec, fit-or-None) pairs in specification order."""
        return [(s, self.fits.get(s.name)) for s in self.specs]


def _design_matrix(df: pd.DataFrame, covariates: Sequence[str]) -> pd.DataFrame:
    missing = [c for c in covariates if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing covariate columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )
    X = df.loc[:, list(covariates)].astype(float)
    return sm.add_constant(X, has_constant="add")


def _check_full_rank(X: pd.DataFrame, label: str) -> None:
    rank = int(np.linalg.matrix_rank(X.to_numpy()))
    if rank < X.shape[1]:
        raise RankDeficientError(
            f"Design matrix for {label} is rank deficient (rank {rank} < {X.shape[1]} columns)"
        )


def fit_ols_hc1(
    df: pd.DataFrame,
    covariates: Sequence[str],
    outcome: str = OUTCOME,
    name: Optional[str] = None,
) -> FittedModel:
    """
    Fit OLS of `outcome` on `covariates` (plus intercept) with HC1 standard errors.

    HC1 is the White sandwich covariance scaled by n/(n-k). Inference uses the
    t distribution with n-k degrees of freedom.

    Raises:
        RankDeficientError: if the design matrix is not of full column rank
        ValueError: if columns are missing or there are too few observations
    """
    label = name or "+".join(covariates)
    X = _design_matrix(df, covariates)
    y = df[outcome].astype(float)
    if len(y) <= X.shape[1]:
        raise ValueError(
            f"Too few observations for {label} (found {len(y)}, need more than {X.shape[1]})"
        )
    _check_full_rank(X, label)

    classical = sm.OLS(y, X).fit()
    robust = sm.OLS(y, X).fit(cov_type="HC1", use_t=True)

    return FittedModel(
        name=label,
        covariates=tuple(covariates),
        params=robust.params,
        bse=robust.bse,
        pvalues=robust.pvalues,
        bse_classical=classical.bse,
        rsquared=float(robust.rsquared),
        rsquared_adj=float(robust.rsquared_adj),
        nobs=int(robust.nobs),
        results=robust,
    )


def fit_nested_models(
    df: pd.DataFrame,
    specs: Sequence[ModelSpec] = NESTED_SPECS,
    outcome: str = OUTCOME,
) -> NestedFitOutputs:
    """
    Fit each specification independently on `df`.

    A specification that cannot be fitted (rank deficiency, missing columns) is
    logged and recorded in `errors`; the remaining specifications are still fitted.
    """
    out = NestedFitOutputs(specs=tuple(specs))
    for spec in specs:
        try:
            out.fits[spec.name] = fit_ols_hc1(
                df, spec.covariates, outcome=outcome, name=spec.name
            )
        except ValueError as e:
            logger.error(f"Model {spec.name} could not be fitted: {e}")
            out.errors[spec.name] = str(e)
    return out


def compute_vif(df: pd.DataFrame, covariates: Sequence[str]) -> Dict[str, float]:
    """
    Variance inflation factor for each covariate of a model.

    Computed with statsmodels' variance_inflation_factor on the design matrix
    with a constant, i.e. 1 / (1 - R²) of each covariate regressed on the
    others. A model with a single covariate yields VIF = 1. An exact linear
    dependence yields inf.
    """
    covariates = list(covariates)
    if len(covariates) == 1:
        return {covariates[0]: 1.0}

    X = _design_matrix(df, covariates)
    exog = X.to_numpy()
    vifs: Dict[str, float] = {}
    with np.errstate(divide="ignore", invalid="ignore"):
        for i, col in enumerate(X.columns):
            if col == "const":
                continue
            vif = float(variance_inflation_factor(exog, i))
            # 1 - R² within tolerance of zero (or a negative rounding artifact)
            if not np.isfinite(vif) or vif < 0 or vif >= 1.0 / _EXACT_DEPENDENCE_TOL:
                vif = float("inf")
            vifs[col] = vif
    return vifs


def compute_vif_table(
    df: pd.DataFrame, specs: Sequence[ModelSpec] = NESTED_SPECS
) -> Dict[str, Dict[str, float]]:
    """VIFs per model name, per covariate."""
    return {spec.name: compute_vif(df, spec.covariates) for spec in specs}


def flag_multicollinearity(
    vifs: Dict[str, float], threshold: float = DEFAULT_VIF_THRESHOLD
) -> List[str]:
    """Covariates whose VIF exceeds threshold (inf included)."""
    return [name for name, v in vifs.items() if v > threshold]


def check_finite_variance(
    df: pd.DataFrame, columns: Sequence[str]
) -> Dict[str, Dict[str, Any]]:
    """
    Sample variance (ddof=1) per column with a finite-and-positive flag.
    Used only to inform the report; never changes any computation.
    """
    checks: Dict[str, Dict[str, Any]] = {}
    for col in columns:
        var = float(pd.to_numeric(df[col], errors="coerce").var(ddof=1))
        ok = bool(np.isfinite(var) and var > 0)
        if not ok:
            logger.warning(f"Variance of '{col}' is not finite and positive: {var}")
        checks[col] = {"variance": var, "finite_positive": ok}
    return checks
