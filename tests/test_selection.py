from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from bat_baci import glmm, selection
from bat_baci.errors import ModelSelectionError

from conftest import SMALL_INTERACTIONS, SMALL_TERMS


def _fake_model(formula: str, aicc: float, k_params: int) -> SimpleNamespace:
    spec = SimpleNamespace(formula=formula, fixed_terms=tuple(formula.split(" ~ ")[1].split(" + ")))
    return SimpleNamespace(
        spec=spec,
        aicc=aicc,
        aic=aicc - 1.0,
        llf=-aicc / 2,
        k_params=k_params,
        converged=True,
        sigma=0.4,
    )


@pytest.fixture(scope="module")
def candidate_set(prepared_dataset):
    spec = glmm.ModelSpec(
        response="total_passes", terms=SMALL_TERMS, interactions=SMALL_INTERACTIONS
    )
    return selection.select(spec, prepared_dataset)


def test_candidates_respect_interaction_hierarchy():
    spec = glmm.ModelSpec(response="y", terms=("A", "B"), interactions=(("A", "B"),))
    candidates = selection.candidate_specs(spec)
    signatures = {c.fixed_terms for c in candidates}

    assert len(candidates) == 5
    assert signatures == {(), ("A",), ("B",), ("A", "B"), ("A", "B", "A:B")}
    assert ("A:B",) not in signatures
    assert ("B", "A:B") not in signatures


def test_full_model_enumeration_is_hierarchical_and_unique():
    spec = glmm.ModelSpec(
        response="total_passes",
        terms=("BA", "CI", "precip_z", "temp_z", "jday_z"),
        interactions=(("BA", "CI"),),
    )
    candidates = selection.candidate_specs(spec)
    assert len(candidates) == 2**5 + 2**3
    assert len({c.formula for c in candidates}) == len(candidates)
    assert all(selection.respects_hierarchy(c) for c in candidates)
    assert spec in candidates


def test_select_ranks_by_aicc(candidate_set):
    table = candidate_set.table
    assert len(candidate_set) == 10
    assert table["aicc"].is_monotonic_increasing
    assert table["delta_aicc"].iloc[0] == 0.0
    assert (table["delta_aicc"] >= 0).all()
    assert table["weight"].sum() == pytest.approx(1.0)
    assert candidate_set.failures.empty


def test_supported_models_fall_within_delta(candidate_set):
    supported = candidate_set.supported
    assert supported[0] == candidate_set.best
    assert len(supported) == int((candidate_set.table["delta_aicc"] <= 2.0).sum())


def test_baci_interaction_is_retained(candidate_set):
    assert ("BA", "CI") in candidate_set.best.interactions


def test_ties_prefer_fewer_parameters_then_formula():
    models = [
        _fake_model("y ~ B + C", 100.0, 4),
        _fake_model("y ~ A + B", 100.0, 4),
        _fake_model("y ~ A", 100.0, 3),
        _fake_model("y ~ A + B + C", 98.5, 5),
    ]
    table, ordered = selection.rank_models(models, delta_threshold=2.0)

    assert [m.spec.formula for m in ordered] == [
        "y ~ A + B + C",
        "y ~ A",
        "y ~ A + B",
        "y ~ B + C",
    ]
    assert list(table["rank"]) == [1, 2, 3, 4]
    assert table["supported"].all()
    np.testing.assert_allclose(table["delta_aicc"], [0.0, 1.5, 1.5, 1.5])


def test_infinite_aicc_gets_zero_weight():
    models = [_fake_model("y ~ A", 50.0, 3), _fake_model("y ~ A + B", float("inf"), 4)]
    table, _ = selection.rank_models(models)
    assert not table["supported"].iloc[1]
    assert table["weight"].iloc[1] == 0.0
    assert table["weight"].iloc[0] == pytest.approx(1.0)


def test_failed_candidates_are_recorded(prepared_dataset):
    spec = glmm.ModelSpec(response="total_passes", terms=("BA", "missing_col"))
    result = selection.select(spec, prepared_dataset)

    assert len(result) == 2
    assert set(result.failures["formula"]) == {
        "total_passes ~ missing_col",
        "total_passes ~ BA + missing_col",
    }
    assert result.failures["error"].str.startswith("KeyError").all()


def test_all_failures_raise(prepared_dataset):
    spec = glmm.ModelSpec(response="not_a_response", terms=("BA",))
    with pytest.raises(ModelSelectionError):
        selection.select(spec, prepared_dataset)


def test_all_infinite_aicc_keeps_first_delta_zero():
    models = [_fake_model("y ~ A + B", float("inf"), 4), _fake_model("y ~ A", float("inf"), 3)]
    table, ordered = selection.rank_models(models)

    assert [m.spec.formula for m in ordered] == ["y ~ A", "y ~ A + B"]
    assert list(table["delta_aicc"]) == [0.0, 0.0]
    assert table["supported"].all()
    np.testing.assert_allclose(table["weight"], [0.5, 0.5])


def test_nan_aicc_ranks_last():
    models = [
        _fake_model("y ~ A", 10.0, 3),
        _fake_model("y ~ B", float("nan"), 3),
        _fake_model("y ~ C", 5.0, 3),
    ]
    table, ordered = selection.rank_models(models)

    assert [m.spec.formula for m in ordered] == ["y ~ C", "y ~ A", "y ~ B"]
    assert table["aicc"].is_monotonic_increasing
    assert list(table["delta_aicc"]) == [0.0, 5.0, float("inf")]
    assert (table["delta_aicc"] >= 0).all()
    assert table["weight"].iloc[2] == 0.0
    assert table["weight"].sum() == pytest.approx(1.0)


def test_parallel_selection_matches_sequential(prepared_dataset):
    spec = glmm.ModelSpec(response="lowf_passes", terms=("BA", "temp_z"))
    sequential = selection.select(spec, prepared_dataset)
    parallel = selection.select(spec, prepared_dataset, max_workers=2)

    assert [s.formula for s in parallel.specs] == [s.formula for s in sequential.specs]
    pd.testing.assert_frame_equal(parallel.table, sequential.table, check_exact=False, rtol=1e-8)
