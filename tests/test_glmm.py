import math

import numpy as np
import pandas as pd
import pytest

from bat_baci import glmm
from bat_baci.errors import ConvergenceWarning, InsufficientGroupsError, InvalidObservationError


def test_model_spec_renders_formula_with_interaction(baci_spec):
    assert baci_spec.formula == "total_passes ~ BA + CI + temp_z + BA:CI"
    assert baci_spec.n_fixed_terms == 4


def test_model_spec_rejects_interaction_without_main_effects():
    with pytest.raises(ValueError, match="requires main effects"):
        glmm.ModelSpec(response="y", terms=("B",), interactions=(("A", "B"),))


def test_intercept_only_spec():
    spec = glmm.ModelSpec(response="y")
    assert spec.formula == "y ~ 1"
    assert spec.fixed_terms == ()


def test_fit_returns_finite_estimates(fitted_model):
    assert fitted_model.converged
    assert list(fitted_model.params.index) == [
        "Intercept",
        "BA[T.after]",
        "CI[T.impact]",
        "BA[T.after]:CI[T.impact]",
        "temp_z",
    ]
    assert np.all(np.isfinite(fitted_model.params))
    assert np.all(np.isfinite(fitted_model.bse))
    assert fitted_model.alpha > 0
    assert fitted_model.sigma > 0
    assert fitted_model.k_params == 7
    assert len(fitted_model.random_effects) == 8


def test_fit_recovers_baci_contrast_sign(fitted_model):
    assert fitted_model.params["BA[T.after]:CI[T.impact]"] < 0


def test_aicc_adds_small_sample_correction(fitted_model):
    k = fitted_model.k_params
    n = fitted_model.nobs
    assert fitted_model.aic == pytest.approx(-2 * fitted_model.llf + 2 * k)
    assert fitted_model.aicc == pytest.approx(fitted_model.aic + 2 * k * (k + 1) / (n - k - 1))


def test_pearson_residuals_match_nb2_variance(fitted_model):
    mu = fitted_model.fitted_mean()
    residuals = fitted_model.pearson_residuals()
    expected = (fitted_model.endog - mu) / np.sqrt(mu + fitted_model.alpha * mu**2)
    np.testing.assert_allclose(residuals, expected)


def test_positional_fit_matches_spec_fit(prepared_dataset, fitted_model):
    model = glmm.fit(
        "total_passes",
        ["BA", "CI", "temp_z"],
        [("BA", "CI")],
        "site",
        prepared_dataset,
    )
    assert model.llf == pytest.approx(fitted_model.llf, rel=1e-8)


def test_analytic_score_matches_numerical_gradient(prepared_dataset, baci_spec):
    frame = prepared_dataset.frame
    import patsy
    from statsmodels.tools.numdiff import approx_fprime

    endog, exog = patsy.dmatrices(baci_spec.formula, frame, return_type="dataframe")
    model = glmm.NegativeBinomialMixedModel(endog.iloc[:, 0], exog, frame["site"].astype(str))
    params = np.concatenate([model.start_values()[:-2], [math.log(0.7), math.log(0.4)]])
    numerical = approx_fprime(params, model.loglike, centered=True)
    np.testing.assert_allclose(model.score(params), numerical, rtol=1e-4, atol=1e-4)


def test_single_site_raises_insufficient_groups(prepared_dataset, baci_spec):
    one_site = prepared_dataset.frame[prepared_dataset.frame["site"] == "S01"]
    with pytest.raises(InsufficientGroupsError):
        glmm.fit_spec(baci_spec.restrict(["BA"]), one_site)


def test_non_integer_response_is_rejected(prepared_dataset):
    frame = prepared_dataset.frame.assign(bad=lambda df: df["total_passes"] + 0.5)
    with pytest.raises(InvalidObservationError):
        glmm.fit_spec(glmm.ModelSpec(response="bad", terms=("BA",)), frame)


def test_non_convergence_warns_and_returns_estimates(prepared_dataset, baci_spec):
    with pytest.warns(ConvergenceWarning):
        model = glmm.fit_spec(baci_spec, prepared_dataset, maxiter=1)
    assert not model.converged
    assert np.all(np.isfinite(model.params))


def test_missing_column_raises_key_error(prepared_dataset):
    with pytest.raises(KeyError):
        glmm.fit_spec(glmm.ModelSpec(response="total_passes", terms=("nope",)), prepared_dataset)


def test_design_info_exposes_term_slices(fitted_model):
    slices = fitted_model.design_info.term_name_slices
    assert list(slices) == ["Intercept", "BA", "CI", "BA:CI", "temp_z"]


def test_rows_with_missing_model_variables_are_dropped(prepared_dataset):
    frame = prepared_dataset.frame.copy()
    frame.loc[frame.index[:5], "temp_z"] = np.nan
    spec = glmm.ModelSpec(response="total_passes", terms=("BA", "temp_z"))
    model = glmm.fit_spec(spec, frame)
    assert model.nobs == len(frame) - 5
    assert isinstance(model.data, pd.DataFrame)
    assert not model.data["temp_z"].isna().any()
