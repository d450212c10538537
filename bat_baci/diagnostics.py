"""Diagnostic checks for fitted negative-binomial GLMMs.

Every check returns data for the analyst and never raises: a value outside its
acceptable band is reported as a flag, and a check that cannot be computed is
reported as NaN.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats

from . import common, glmm
from .glmm import FittedModel, ModelSpec
from .preparation import PreparedDataset

logger = logging.getLogger(__name__)

_NUMERIC_ERRORS = (ValueError, ArithmeticError, np.linalg.LinAlgError)


@dataclass(frozen=True, eq=False)
class DiagnosticsReport:
    """Singularity, dispersion, residual and collinearity checks of one model."""

    formula: str
    converged: bool
    sigma: float
    singular: bool
    pearson_chi2: float
    df_resid: int
    dispersion_ratio: float
    dispersion_p_value: float
    dispersion_ok: bool
    shapiro_p_value: float
    qq: pd.DataFrame
    collinearity: pd.DataFrame

    @property
    def flagged_terms(self) -> list[str]:
        if self.collinearity.empty:
            return []
        return self.collinearity.loc[self.collinearity["flagged"], "term"].tolist()

    def to_record(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "converged": self.converged,
            "sigma": self.sigma,
            "singular": self.singular,
            "pearson_chi2": self.pearson_chi2,
            "df_resid": self.df_resid,
            "dispersion_ratio": self.dispersion_ratio,
            "dispersion_p_value": self.dispersion_p_value,
            "dispersion_ok": self.dispersion_ok,
            "shapiro_p_value": self.shapiro_p_value,
            "collinear_terms": ";".join(self.flagged_terms),
        }


def is_singular(model: FittedModel, tolerance: float = common.SINGULAR_TOLERANCE) -> bool:
    """True when the random-intercept standard deviation sits on its zero boundary."""

    return not math.isfinite(model.sigma) or model.sigma <= tolerance


def overdispersion(model: FittedModel) -> dict[str, float]:
    """Pearson chi-squared, dispersion ratio and its upper-tail p-value."""

    df_resid = model.df_resid
    try:
        residuals = model.pearson_residuals()
        chi2 = float(np.sum(residuals**2))
    except _NUMERIC_ERRORS as exc:
        logger.debug("Pearson residuals failed for %s: %s", model.spec.formula, exc)
        chi2 = float("nan")
    if df_resid > 0 and math.isfinite(chi2):
        ratio = chi2 / df_resid
        p_value = float(stats.chi2.sf(chi2, df_resid))
    else:
        ratio = float("nan")
        p_value = float("nan")
    return {"pearson_chi2": chi2, "df_resid": df_resid, "ratio": ratio, "p_value": p_value}


def dispersion_within_band(
    ratio: float,
    band: tuple[float, float] = common.DISPERSION_BAND,
) -> bool:
    lower, upper = band
    return math.isfinite(ratio) and lower <= ratio <= upper


def residual_normality(model: FittedModel) -> tuple[pd.DataFrame, float]:
    """Normal Q-Q pairs and Shapiro–Wilk p-value of the Pearson residuals."""

    empty = pd.DataFrame(columns=["theoretical", "sample"])
    try:
        residuals = np.asarray(model.pearson_residuals(), dtype=float)
        residuals = residuals[np.isfinite(residuals)]
        if residuals.size < 3:
            return empty, float("nan")
        (theoretical, ordered), _ = stats.probplot(residuals, dist="norm")
        shapiro_p = float(stats.shapiro(residuals).pvalue)
    except _NUMERIC_ERRORS as exc:
        logger.debug("Residual normality failed for %s: %s", model.spec.formula, exc)
        return empty, float("nan")
    return pd.DataFrame({"theoretical": theoretical, "sample": ordered}), shapiro_p


def gvif_table(model: FittedModel, threshold: float = common.GVIF_THRESHOLD) -> pd.DataFrame:
    """Generalized variance-inflation factor per fixed-effect term.

    GVIF follows Fox & Monette (1992) on the correlation matrix of the
    fixed-effect estimates, excluding the intercept. ``gvif_adj`` is
    ``GVIF ** (1 / (2 * df))``; a term is flagged when ``gvif_adj ** 2``
    exceeds the threshold, which for a 1-df term is GVIF itself.
    """

    slices = {
        name: term_slice
        for name, term_slice in model.design_info.term_name_slices.items()
        if name != "Intercept"
    }
    columns = ["term", "df", "gvif", "gvif_adj", "flagged"]
    if not slices:
        return pd.DataFrame(columns=columns)

    rows: list[dict[str, Any]] = []
    if len(slices) == 1:
        for name, term_slice in slices.items():
            rows.append({"term": name, "df": term_slice.stop - term_slice.start, "gvif": 1.0})
    else:
        positions: dict[str, list[int]] = {}
        ordered: list[int] = []
        for name, term_slice in slices.items():
            start = len(ordered)
            ordered.extend(range(term_slice.start, term_slice.stop))
            positions[name] = list(range(start, len(ordered)))
        try:
            covariance = model.cov_params.to_numpy()[np.ix_(ordered, ordered)]
            std = np.sqrt(np.diag(covariance))
            with np.errstate(divide="ignore", invalid="ignore"):
                correlation = covariance / np.outer(std, std)
            det_all = np.linalg.det(correlation)
        except _NUMERIC_ERRORS as exc:
            logger.debug("GVIF failed for %s: %s", model.spec.formula, exc)
            correlation, det_all = None, float("nan")

        for name, own in positions.items():
            df = len(own)
            if correlation is None or not np.all(np.isfinite(correlation)) or det_all <= 0:
                gvif = float("nan")
            else:
                others = [idx for idx in range(len(ordered)) if idx not in own]
                gvif = float(
                    np.linalg.det(correlation[np.ix_(own, own)])
                    * np.linalg.det(correlation[np.ix_(others, others)])
                    / det_all
                )
            rows.append({"term": name, "df": df, "gvif": gvif})

    table = pd.DataFrame.from_records(rows)
    table["gvif_adj"] = table["gvif"] ** (1.0 / (2.0 * table["df"]))
    table["flagged"] = (table["gvif_adj"] ** 2 > threshold).fillna(False).astype(bool)
    return table.loc[:, columns]


def diagnose(
    model: FittedModel,
    *,
    singular_tolerance: float = common.SINGULAR_TOLERANCE,
    dispersion_band: tuple[float, float] = common.DISPERSION_BAND,
    gvif_threshold: float = common.GVIF_THRESHOLD,
) -> DiagnosticsReport:
    """Run every diagnostic check on a fitted model."""

    singular = is_singular(model, singular_tolerance)
    dispersion = overdispersion(model)
    qq, shapiro_p = residual_normality(model)
    collinearity = gvif_table(model, gvif_threshold)

    report = DiagnosticsReport(
        formula=model.spec.formula,
        converged=model.converged,
        sigma=model.sigma,
        singular=singular,
        pearson_chi2=dispersion["pearson_chi2"],
        df_resid=int(dispersion["df_resid"]),
        dispersion_ratio=dispersion["ratio"],
        dispersion_p_value=dispersion["p_value"],
        dispersion_ok=dispersion_within_band(dispersion["ratio"], dispersion_band),
        shapiro_p_value=shapiro_p,
        qq=qq,
        collinearity=collinearity,
    )

    if singular:
        logger.warning(
            "Singular fit for %s: random-intercept SD %.4f <= %.2f",
            model.spec.formula,
            model.sigma,
            singular_tolerance,
        )
    if not report.dispersion_ok:
        logger.warning(
            "Dispersion ratio %.3f for %s is outside [%s, %s]",
            report.dispersion_ratio,
            model.spec.formula,
            *dispersion_band,
        )
    if report.flagged_terms:
        logger.warning(
            "Collinear terms in %s: %s", model.spec.formula, ", ".join(report.flagged_terms)
        )
    return report


def prune_collinear(
    spec: ModelSpec,
    data: PreparedDataset | pd.DataFrame,
    *,
    threshold: float = common.GVIF_THRESHOLD,
    model: FittedModel | None = None,
    **fit_kwargs,
) -> tuple[FittedModel, ModelSpec, list[str]]:
    """Drop the worst flagged main effect and refit until no term is flagged.

    Main effects that take part in an interaction are never dropped, so the
    BACI contrast stays in the model.
    """

    current = spec
    fitted = model if model is not None else glmm.fit_spec(current, data, **fit_kwargs)
    dropped: list[str] = []
    while True:
        table = gvif_table(fitted, threshold)
        protected = set(current.interaction_labels)
        for pair in current.interactions:
            protected.update(pair)
        candidates = table[table["flagged"] & ~table["term"].isin(protected)]
        if candidates.empty:
            break
        worst = str(
            candidates.sort_values(["gvif_adj", "term"], ascending=[False, True]).iloc[0]["term"]
        )
        dropped.append(worst)
        logger.info("Dropping collinear term %s from %s", worst, current.formula)
        current = current.restrict(
            [term for term in current.terms if term != worst], current.interactions
        )
        fitted = glmm.fit_spec(current, data, **fit_kwargs)
    return fitted, current, dropped
