"""All-subsets model selection by AICc, respecting interaction hierarchy."""
from __future__ import annotations

import itertools
import logging
import math
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from . import common, glmm
from .errors import ConvergenceWarning, ModelSelectionError
from .glmm import FittedModel, ModelSpec
from .preparation import PreparedDataset

logger = logging.getLogger(__name__)


@dataclass
class CandidateSet:
    """Candidate models ranked by AICc with deltas from the best."""

    full_spec: ModelSpec
    delta_threshold: float
    table: pd.DataFrame
    specs: list[ModelSpec]
    models: list[FittedModel]
    failures: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["formula", "error"])
    )

    def __len__(self) -> int:
        return len(self.specs)

    @property
    def best(self) -> ModelSpec:
        return self.specs[0]

    @property
    def supported(self) -> list[ModelSpec]:
        mask = self.table["supported"].to_numpy()
        return [spec for spec, keep in zip(self.specs, mask) if keep]


def respects_hierarchy(spec: ModelSpec) -> bool:
    """True when every interaction's main effects are present."""

    return all(a in spec.terms and b in spec.terms for a, b in spec.interactions)


def candidate_specs(full_spec: ModelSpec) -> list[ModelSpec]:
    """Enumerate the hierarchy-respecting sub-models of full_spec.

    Includes the intercept-only model and full_spec itself. An interaction is
    only offered once both of its main effects are in the subset.
    """

    candidates: list[ModelSpec] = []
    for size in range(len(full_spec.terms) + 1):
        for subset in itertools.combinations(full_spec.terms, size):
            allowed = [
                pair for pair in full_spec.interactions if set(pair) <= set(subset)
            ]
            for k in range(len(allowed) + 1):
                for chosen in itertools.combinations(allowed, k):
                    candidates.append(full_spec.restrict(subset, chosen))
    return candidates


def _fit_candidate(
    spec: ModelSpec,
    frame: pd.DataFrame,
    fit_kwargs: dict[str, Any],
) -> tuple[ModelSpec, FittedModel | None, str | None]:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        try:
            return spec, glmm.fit_spec(spec, frame, **fit_kwargs), None
        except Exception as exc:
            return spec, None, f"{type(exc).__name__}: {exc}"


def rank_models(
    models: list[FittedModel],
    delta_threshold: float = common.DELTA_AICC,
) -> tuple[pd.DataFrame, list[FittedModel]]:
    """Sort fitted models by AICc, then parameter count, then formula.

    A NaN or infinite AICc ranks last as +inf. Deltas are taken from the first
    row, which is always 0, even when every AICc is infinite.
    """

    ordered = sorted(models, key=lambda m: (_ranking_aicc(m), m.k_params, m.spec.formula))
    if not ordered:
        return pd.DataFrame(), []
    best = _ranking_aicc(ordered[0])
    records = []
    for rank, model in enumerate(ordered, start=1):
        aicc = _ranking_aicc(model)
        delta = 0.0 if aicc == best else aicc - best
        records.append(
            {
                "rank": rank,
                "formula": model.spec.formula,
                "terms": " + ".join(model.spec.fixed_terms),
                "n_params": model.k_params,
                "llf": model.llf,
                "aic": model.aic,
                "aicc": aicc,
                "delta_aicc": delta,
                "converged": model.converged,
                "sigma": model.sigma,
                "supported": delta <= delta_threshold,
            }
        )
    table = pd.DataFrame.from_records(records)
    deltas = table["delta_aicc"].to_numpy(dtype=float)
    finite = np.isfinite(deltas)
    likelihoods = np.where(finite, np.exp(-0.5 * np.where(finite, deltas, 0.0)), 0.0)
    total = likelihoods.sum()
    table["weight"] = likelihoods / total if total > 0 else 0.0
    return table, ordered


def _ranking_aicc(model: FittedModel) -> float:
    aicc = float(model.aicc)
    return aicc if math.isfinite(aicc) else math.inf


def select(
    full_spec: ModelSpec,
    data: PreparedDataset | pd.DataFrame,
    delta_threshold: float = common.DELTA_AICC,
    *,
    max_workers: int | None = None,
    **fit_kwargs,
) -> CandidateSet:
    """Fit every hierarchy-respecting sub-model and rank them by AICc.

    Candidates that fail to fit are excluded from the ranking and listed in
    ``CandidateSet.failures``. With ``max_workers`` above one the fits run
    in worker processes; the ranking does not depend on completion order.
    """

    frame = data.frame if isinstance(data, PreparedDataset) else data
    specs = candidate_specs(full_spec)
    logger.info("Selecting among %d candidate models for %s", len(specs), full_spec.formula)

    if max_workers is not None and max_workers > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            outcomes = list(
                executor.map(
                    _fit_candidate,
                    specs,
                    itertools.repeat(frame),
                    itertools.repeat(fit_kwargs),
                )
            )
    else:
        outcomes = [_fit_candidate(spec, frame, fit_kwargs) for spec in specs]

    models: list[FittedModel] = []
    failures: list[dict[str, str]] = []
    for spec, model, error in outcomes:
        if model is None:
            logger.warning("Candidate %s failed to fit: %s", spec.formula, error)
            failures.append({"formula": spec.formula, "error": str(error)})
        else:
            models.append(model)

    if not models:
        raise ModelSelectionError(
            f"None of the {len(specs)} candidate models for {full_spec.formula} could be fitted."
        )

    table, ordered = rank_models(models, delta_threshold)
    logger.info(
        "Best model %s (AICc %.2f); %d supported within delta %.1f",
        ordered[0].spec.formula,
        ordered[0].aicc,
        int(table["supported"].sum()),
        delta_threshold,
    )
    return CandidateSet(
        full_spec=full_spec,
        delta_threshold=delta_threshold,
        table=table,
        specs=[model.spec for model in ordered],
        models=ordered,
        failures=pd.DataFrame(failures, columns=["formula", "error"]),
    )
