"""Fit, diagnose, select, refit and extract effects per response and partition."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from . import common, diagnostics, effects, glmm, selection
from .diagnostics import DiagnosticsReport
from .errors import BatBaciError
from .glmm import FittedModel, ModelSpec
from .preparation import PARTITIONS, PreparedDataset, prepare
from .selection import CandidateSet

logger = logging.getLogger(__name__)

CURVE_POINTS = 25
BACI_TERM = "BA[T.after]:CI[T.impact]"


@dataclass
class PipelineResult:
    """Everything derived from one (response, partition) run."""

    response: str
    partition: str
    full_model: FittedModel
    full_diagnostics: DiagnosticsReport
    dropped_terms: list[str]
    candidates: CandidateSet
    best_model: FittedModel
    best_diagnostics: DiagnosticsReport
    coefficients: pd.DataFrame
    predictions: pd.DataFrame = field(default_factory=pd.DataFrame)

    def label(self) -> str:
        return f"{self.response}/{self.partition}"


def full_spec(
    response: str,
    *,
    terms: Sequence[str] = common.FULL_MODEL_TERMS,
    interactions: Sequence[tuple[str, str]] = common.FULL_MODEL_INTERACTIONS,
    group: str = common.SITE_COLUMN,
) -> ModelSpec:
    return ModelSpec(
        response=response,
        terms=tuple(terms),
        interactions=tuple(interactions),
        group=group,
    )


def prediction_grids(model: FittedModel) -> dict[str, dict[str, Sequence | None]]:
    """BA x CI cell means plus a curve for each continuous term of the model."""

    grids: dict[str, dict[str, Sequence | None]] = {
        "BA:CI": {"BA": list(common.BA_LEVELS), "CI": list(common.CI_LEVELS)}
    }
    for term in model.spec.terms:
        series = model.data[term]
        if isinstance(series.dtype, pd.CategoricalDtype):
            continue
        if pd.api.types.is_numeric_dtype(series):
            grids[term] = {
                term: np.linspace(float(series.min()), float(series.max()), CURVE_POINTS)
            }
    return grids


def run_single(
    response: str,
    dataset: PreparedDataset,
    *,
    terms: Sequence[str] = common.FULL_MODEL_TERMS,
    interactions: Sequence[tuple[str, str]] = common.FULL_MODEL_INTERACTIONS,
    delta: float = common.DELTA_AICC,
    prune: bool = True,
    max_workers: int | None = None,
    grids: Mapping[str, Mapping[str, Sequence | None]] | None = None,
    **fit_kwargs,
) -> PipelineResult:
    """Run the full pipeline for one response on one partition."""

    spec = full_spec(response, terms=terms, interactions=interactions)
    logger.info("[%s/%s] fitting %s", response, dataset.name, spec.formula)
    full_model = glmm.fit_spec(spec, dataset, **fit_kwargs)
    full_report = diagnostics.diagnose(full_model)

    dropped: list[str] = []
    if prune and full_report.flagged_terms:
        full_model, spec, dropped = diagnostics.prune_collinear(
            spec, dataset, model=full_model, **fit_kwargs
        )
        full_report = diagnostics.diagnose(full_model)

    candidates = selection.select(
        spec, dataset, delta, max_workers=max_workers, **fit_kwargs
    )
    logger.info("[%s/%s] refitting %s", response, dataset.name, candidates.best.formula)
    best_model = glmm.fit_spec(candidates.best, dataset, **fit_kwargs)
    best_report = diagnostics.diagnose(best_model)

    coefficient_table = effects.coefficients(best_model)
    coefficient_table.insert(0, "partition", dataset.name)

    curves = []
    for name, grid in (grids or prediction_grids(best_model)).items():
        curve = effects.predict(best_model, grid, scaling=dataset.scaling)
        curve.insert(0, "effect", name)
        curves.append(curve)
    predictions = pd.concat(curves, ignore_index=True) if curves else pd.DataFrame()
    predictions.insert(0, "partition", dataset.name)

    return PipelineResult(
        response=response,
        partition=dataset.name,
        full_model=full_model,
        full_diagnostics=full_report,
        dropped_terms=dropped,
        candidates=candidates,
        best_model=best_model,
        best_diagnostics=best_report,
        coefficients=coefficient_table,
        predictions=predictions,
    )


def _diagnostics_rows(result: PipelineResult) -> list[dict[str, object]]:
    rows = []
    for stage, report in (("full", result.full_diagnostics), ("best", result.best_diagnostics)):
        record = report.to_record()
        record.update(
            {
                "response": result.response,
                "partition": result.partition,
                "stage": stage,
                "dropped_terms": ";".join(result.dropped_terms),
            }
        )
        rows.append(record)
    return rows


def _baci_line(result: PipelineResult) -> str:
    table = result.coefficients.set_index("term")
    if BACI_TERM in table.index:
        row = table.loc[BACI_TERM]
        effect = f"BA:CI IRR {row['incidence_rate_ratio']:.2f} (p={row['p_value']:.3f})"
    else:
        effect = "BA:CI not retained"
    flags = []
    if result.best_diagnostics.singular:
        flags.append("singular")
    if not result.best_diagnostics.dispersion_ok:
        flags.append("dispersion")
    if not result.best_model.converged:
        flags.append("non-converged")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"• {result.label()}: {result.candidates.best.formula}; {effect}{suffix}"


def run(
    *,
    output_dir: Path | None = None,
    data_path: Path | None = None,
    responses: Sequence[str] = common.RESPONSES,
    partitions: Sequence[str] = PARTITIONS,
    terms: Sequence[str] = common.FULL_MODEL_TERMS,
    interactions: Sequence[tuple[str, str]] = common.FULL_MODEL_INTERACTIONS,
    delta: float = common.DELTA_AICC,
    prune: bool = True,
    max_workers: int | None = None,
) -> Path:
    """Run every (response, partition) pipeline and write the tidy tables."""

    load_result = common.load_observations(data_path=data_path)
    dataset = prepare(load_result.data)
    out_dir = common.prepare_output_dir("glmm", output_dir)

    results: list[PipelineResult] = []
    failed_runs: list[dict[str, str]] = []
    for partition in partitions:
        subset = dataset.partition(partition)
        for response in responses:
            try:
                results.append(
                    run_single(
                        response,
                        subset,
                        terms=terms,
                        interactions=interactions,
                        delta=delta,
                        prune=prune,
                        max_workers=max_workers,
                    )
                )
            except (BatBaciError, KeyError) as exc:
                logger.error("Run %s/%s failed: %s", response, partition, exc)
                failed_runs.append(
                    {"response": response, "partition": partition, "error": str(exc)}
                )

    if results:
        pd.concat([r.coefficients for r in results], ignore_index=True).to_csv(
            out_dir / "coefficients.csv", index=False
        )
        pd.concat([r.predictions for r in results], ignore_index=True).to_csv(
            out_dir / "predictions.csv", index=False
        )
        pd.concat(
            [
                r.candidates.table.assign(response=r.response, partition=r.partition)
                for r in results
            ],
            ignore_index=True,
        ).to_csv(out_dir / "candidates.csv", index=False)
        pd.concat(
            [
                r.candidates.failures.assign(response=r.response, partition=r.partition)
                for r in results
            ],
            ignore_index=True,
        ).to_csv(out_dir / "selection_failures.csv", index=False)
        pd.concat(
            [
                r.best_diagnostics.collinearity.assign(
                    response=r.response, partition=r.partition
                )
                for r in results
            ],
            ignore_index=True,
        ).to_csv(out_dir / "collinearity.csv", index=False)
        pd.DataFrame.from_records(
            [row for r in results for row in _diagnostics_rows(r)]
        ).to_csv(out_dir / "diagnostics.csv", index=False)

    common.write_json(
        out_dir / "run_manifest.json",
        {
            "load": dict(load_result.diagnostics),
            "site_nights": len(dataset),
            "partitions": {name: len(dataset.partition(name)) for name in partitions},
            "standardization": {
                "means": dict(dataset.scaling.means),
                "stds": dict(dataset.scaling.stds),
            },
            "delta_aicc": delta,
            "completed_runs": [r.label() for r in results],
            "failed_runs": failed_runs,
        },
    )

    summary_lines = ["BACI GLMM wrap-up:", *(_baci_line(r) for r in results)]
    if failed_runs:
        summary_lines.append(f"• {len(failed_runs)} run(s) failed; see run_manifest.json.")
    common.write_summary(out_dir, summary_lines)
    common.write_session_info(out_dir)

    summary_items = {
        "Site-nights": len(dataset),
        "Completed runs": len(results),
        "Failed runs": len(failed_runs),
    }
    print("BACI GLMM summary:")
    print(common.indent_lines(common.format_bullet_summary(summary_items)))
    for line in summary_lines[1:]:
        print(f"  {line}")

    return out_dir
