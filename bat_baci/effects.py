"""Coefficient tables and marginal predictions from fitted GLMMs."""
from __future__ import annotations

import itertools
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
import patsy
from scipy import stats

from .glmm import FittedModel
from .preparation import Standardizer


def coefficients(
    model: FittedModel,
    *,
    include_intercept: bool = True,
    level: float = 0.95,
) -> pd.DataFrame:
    """Tidy fixed-effect table with Wald z-tests, confidence limits and IRRs."""

    params = model.params
    se = model.bse
    with np.errstate(divide="ignore", invalid="ignore"):
        z_values = params / se
    p_values = 2.0 * stats.norm.sf(np.abs(z_values))
    critical = stats.norm.ppf(0.5 + level / 2.0)
    frame = pd.DataFrame(
        {
            "term": params.index,
            "estimate": params.to_numpy(),
            "std_error": se.to_numpy(),
            "z_value": np.asarray(z_values, dtype=float),
            "p_value": np.asarray(p_values, dtype=float),
            "conf_low": (params - critical * se).to_numpy(),
            "conf_high": (params + critical * se).to_numpy(),
        }
    )
    frame["incidence_rate_ratio"] = np.exp(frame["estimate"])
    frame["response"] = model.spec.response
    frame["formula"] = model.spec.formula
    if not include_intercept:
        frame = frame[frame["term"] != "Intercept"].reset_index(drop=True)
    return frame


def reference_values(model: FittedModel) -> dict[str, object]:
    """Mean of each numeric predictor and baseline level of each categorical one."""

    skip = {model.spec.response, model.spec.group}
    references: dict[str, object] = {}
    for column in model.data.columns:
        if column in skip:
            continue
        series = model.data[column]
        if isinstance(series.dtype, pd.CategoricalDtype):
            references[column] = series.cat.categories[0]
        elif pd.api.types.is_numeric_dtype(series):
            references[column] = float(series.mean())
        else:
            references[column] = sorted(series.astype(str).unique())[0]
    return references


def _grid_values(model: FittedModel, covariate: str, values: Sequence | None) -> list:
    if values is not None:
        return list(values)
    if covariate not in model.data.columns:
        raise ValueError(
            f"Covariate '{covariate}' is not in the model; pass explicit grid values."
        )
    series = model.data[covariate]
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique().tolist())


def predict(
    model: FittedModel,
    grid: Mapping[str, Sequence | None],
    *,
    level: float = 0.95,
    scaling: Standardizer | None = None,
) -> pd.DataFrame:
    """Population-level predicted mean response over a grid of one or two covariates.

    Covariates not in ``grid`` are held at their reference values. A grid
    value of ``None`` means every observed value of that covariate. Confidence
    limits are computed on the log scale and back-transformed.
    """

    if not 1 <= len(grid) <= 2:
        raise ValueError("Marginal predictions vary one or two covariates.")

    varying = {name: _grid_values(model, name, values) for name, values in grid.items()}
    rows = [dict(zip(varying, combo)) for combo in itertools.product(*varying.values())]
    newdata = pd.DataFrame.from_records(rows, columns=list(varying))

    design_frame = newdata.copy()
    for column, reference in reference_values(model).items():
        if column not in design_frame:
            design_frame[column] = reference
        series = model.data[column]
        if isinstance(series.dtype, pd.CategoricalDtype):
            design_frame[column] = pd.Categorical(
                design_frame[column], categories=series.cat.categories
            )

    exog = patsy.build_design_matrices(
        [model.design_info], design_frame, return_type="dataframe"
    )[0]
    exog = exog.loc[:, model.params.index].to_numpy()
    covariance = model.cov_params.to_numpy()
    eta = exog @ model.params.to_numpy()
    se_link = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", exog, covariance, exog), 0.0, None))
    critical = stats.norm.ppf(0.5 + level / 2.0)

    result = newdata.copy()
    result["predicted"] = np.exp(eta)
    result["std_error_link"] = se_link
    result["conf_low"] = np.exp(eta - critical * se_link)
    result["conf_high"] = np.exp(eta + critical * se_link)
    if scaling is not None:
        for column in varying:
            base = column[:-2] if column.endswith("_z") else None
            if base is not None and base in scaling.means:
                result[f"{base}_raw"] = scaling.inverse(column, result[column].to_numpy())
    result["response"] = model.spec.response
    return result
