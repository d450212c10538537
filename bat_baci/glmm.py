"""Negative-binomial mixed model with a single random intercept.

The marginal likelihood integrates the random intercept with Gauss–Hermite
quadrature and is maximised through statsmodels' ``GenericLikelihoodModel``.
Dispersion (NB2, variance ``mu + alpha * mu**2``) and the random-intercept
standard deviation are estimated on the log scale.
"""
from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from numpy.polynomial.hermite import hermgauss
from scipy.special import digamma, gammaln, logsumexp
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.numdiff import approx_fprime

from . import common
from .errors import ConvergenceWarning, InsufficientGroupsError, InvalidObservationError
from .preparation import PreparedDataset

logger = logging.getLogger(__name__)

QUADRATURE_NODES = 25
MAX_ITERATIONS = 1000
_ETA_BOUND = 30.0
_LOG_ALPHA_BOUNDS = (-15.0, 15.0)
_LOG_SIGMA_BOUNDS = (-15.0, 5.0)


@dataclass(frozen=True)
class ModelSpec:
    """Fixed-effect terms, interactions and grouping of one candidate model."""

    response: str
    terms: tuple[str, ...] = ()
    interactions: tuple[tuple[str, str], ...] = ()
    group: str = common.SITE_COLUMN

    def __post_init__(self) -> None:
        object.__setattr__(self, "terms", tuple(self.terms))
        object.__setattr__(
            self, "interactions", tuple(tuple(pair) for pair in self.interactions)
        )
        for pair in self.interactions:
            if len(pair) != 2:
                raise ValueError(f"Interactions must be pairs of terms, got {pair}.")
            missing = [term for term in pair if term not in self.terms]
            if missing:
                raise ValueError(
                    f"Interaction {':'.join(pair)} requires main effects {missing}."
                )

    @property
    def interaction_labels(self) -> tuple[str, ...]:
        return tuple(f"{a}:{b}" for a, b in self.interactions)

    @property
    def fixed_terms(self) -> tuple[str, ...]:
        return self.terms + self.interaction_labels

    @property
    def n_fixed_terms(self) -> int:
        return len(self.fixed_terms)

    @property
    def formula(self) -> str:
        rhs = " + ".join(self.fixed_terms) if self.fixed_terms else "1"
        return f"{self.response} ~ {rhs}"

    def restrict(
        self,
        terms: Sequence[str],
        interactions: Sequence[tuple[str, str]] = (),
    ) -> "ModelSpec":
        """Return a sub-model with the given terms, keeping response and grouping."""

        return replace(self, terms=tuple(terms), interactions=tuple(interactions))


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Estimates of one negative-binomial GLMM fit; read-only."""

    spec: ModelSpec
    params: pd.Series
    cov_params: pd.DataFrame
    alpha: float
    sigma: float
    random_effects: pd.Series
    llf: float
    nobs: int
    k_params: int
    converged: bool
    message: str
    exog: pd.DataFrame
    endog: np.ndarray
    group_codes: np.ndarray
    data: pd.DataFrame

    @property
    def bse(self) -> pd.Series:
        variances = np.diag(self.cov_params.to_numpy())
        with np.errstate(invalid="ignore"):
            std = np.where(variances >= 0, np.sqrt(np.abs(variances)), np.nan)
        return pd.Series(std, index=self.params.index)

    @property
    def aic(self) -> float:
        return -2.0 * self.llf + 2.0 * self.k_params

    @property
    def aicc(self) -> float:
        denominator = self.nobs - self.k_params - 1
        if denominator <= 0:
            return math.inf
        return self.aic + 2.0 * self.k_params * (self.k_params + 1) / denominator

    @property
    def df_resid(self) -> int:
        return self.nobs - self.k_params

    @property
    def design_info(self) -> patsy.DesignInfo:
        """Design of the fixed effects, rebuilt from the model frame."""

        rhs = self.spec.formula.split("~", 1)[1]
        return patsy.dmatrix(rhs, self.data, NA_action="raise").design_info

    def linear_predictor(self, *, conditional: bool = True) -> np.ndarray:
        eta = self.exog.to_numpy() @ self.params.to_numpy()
        if conditional:
            eta = eta + self.random_effects.to_numpy()[self.group_codes]
        return eta

    def fitted_mean(self, *, conditional: bool = True) -> np.ndarray:
        return np.exp(self.linear_predictor(conditional=conditional))

    def pearson_residuals(self) -> np.ndarray:
        mu = self.fitted_mean(conditional=True)
        return (self.endog - mu) / np.sqrt(mu + self.alpha * mu**2)


class NegativeBinomialMixedModel(GenericLikelihoodModel):
    """NB2 log-link GLMM with one random intercept per group level."""

    def __init__(self, endog, exog, groups, *, n_nodes: int = QUADRATURE_NODES, **kwds):
        super().__init__(
            endog, exog, extra_params_names=["log_alpha", "log_sigma"], **kwds
        )
        codes, levels = pd.factorize(np.asarray(groups), sort=True)
        self.group_codes = codes
        self.group_levels = levels
        self.n_groups = len(levels)
        self.k_fe = self.exog.shape[1]
        self._membership = (
            codes[None, :] == np.arange(self.n_groups)[:, None]
        ).astype(float)
        nodes, weights = hermgauss(n_nodes)
        self.nodes = math.sqrt(2.0) * nodes
        self.log_weights = np.log(weights) - 0.5 * math.log(math.pi)

    def _unpack(self, params: np.ndarray) -> tuple[np.ndarray, float, float]:
        params = np.asarray(params, dtype=float)
        beta = params[: self.k_fe]
        alpha = math.exp(float(np.clip(params[self.k_fe], *_LOG_ALPHA_BOUNDS)))
        sigma = math.exp(float(np.clip(params[self.k_fe + 1], *_LOG_SIGMA_BOUNDS)))
        return beta, alpha, sigma

    def _node_terms(self, params: np.ndarray):
        beta, alpha, sigma = self._unpack(params)
        eta = self.exog @ beta
        eta_nodes = np.clip(eta[:, None] + sigma * self.nodes[None, :], -_ETA_BOUND, _ETA_BOUND)
        mu = np.exp(eta_nodes)
        size = 1.0 / alpha
        y = self.endog[:, None]
        logpmf = (
            gammaln(y + size)
            - gammaln(size)
            - gammaln(y + 1.0)
            + size * (np.log(size) - np.log(size + mu))
            + y * (eta_nodes - np.log(size + mu))
        )
        group_ll = self._membership @ logpmf + self.log_weights[None, :]
        return group_ll, mu, alpha, sigma, size

    def _posterior_weights(self, group_ll: np.ndarray) -> np.ndarray:
        return np.exp(group_ll - logsumexp(group_ll, axis=1, keepdims=True))

    def loglikeobs(self, params: np.ndarray) -> np.ndarray:
        """Marginal log-likelihood contribution of each group."""

        group_ll, *_ = self._node_terms(params)
        return logsumexp(group_ll, axis=1)

    def loglike(self, params: np.ndarray) -> float:
        return float(self.loglikeobs(params).sum())

    def score(self, params: np.ndarray) -> np.ndarray:
        group_ll, mu, alpha, sigma, size = self._node_terms(params)
        weights = self._posterior_weights(group_ll)[self.group_codes]
        y = self.endog[:, None]
        eta_score = (y - mu) / (1.0 + alpha * mu)
        d_size = (
            digamma(y + size)
            - digamma(size)
            + np.log(size)
            - np.log(size + mu)
            + (mu - y) / (size + mu)
        )
        grad_beta = self.exog.T @ (weights * eta_score).sum(axis=1)
        grad_log_alpha = -size * float((weights * d_size).sum())
        grad_log_sigma = float((weights * eta_score * (sigma * self.nodes)[None, :]).sum())
        return np.concatenate([grad_beta, [grad_log_alpha, grad_log_sigma]])

    def hessian(self, params: np.ndarray) -> np.ndarray:
        hess = approx_fprime(np.asarray(params, dtype=float), self.score, centered=True)
        return (hess + hess.T) / 2.0

    def random_effects(self, params: np.ndarray) -> np.ndarray:
        """Conditional (posterior mean) random intercept of each group."""

        group_ll, _, _, sigma, _ = self._node_terms(params)
        return self._posterior_weights(group_ll) @ (sigma * self.nodes)

    def start_values(self) -> np.ndarray:
        try:
            poisson = sm.GLM(self.endog, self.exog, family=sm.families.Poisson()).fit()
            beta = np.asarray(poisson.params, dtype=float)
        except (ValueError, np.linalg.LinAlgError):
            beta = np.zeros(self.k_fe)
            beta[0] = math.log(max(float(np.mean(self.endog)), 0.1))
        if not np.all(np.isfinite(beta)):
            beta = np.zeros(self.k_fe)
            beta[0] = math.log(max(float(np.mean(self.endog)), 0.1))
        return np.concatenate([beta, [0.0, math.log(0.5)]])


def _model_frame(spec: ModelSpec, frame: pd.DataFrame) -> pd.DataFrame:
    variables = [spec.response, spec.group, *spec.terms]
    missing = [column for column in variables if column not in frame.columns]
    if missing:
        raise KeyError(f"Columns not found in data: {', '.join(missing)}")
    model_frame = frame.loc[:, list(dict.fromkeys(variables))].dropna().copy()
    for column in model_frame.columns:
        if isinstance(model_frame[column].dtype, pd.CategoricalDtype):
            model_frame[column] = model_frame[column].cat.remove_unused_categories()

    counts = pd.to_numeric(model_frame[spec.response], errors="coerce")
    if counts.isna().any() or (counts < 0).any() or (counts != np.floor(counts)).any():
        raise InvalidObservationError(
            f"Response '{spec.response}' must hold non-negative integer counts."
        )
    model_frame[spec.response] = counts.astype(float)

    n_levels = model_frame[spec.group].nunique()
    if n_levels < 2:
        raise InsufficientGroupsError(
            f"Grouping variable '{spec.group}' has {n_levels} observed level(s); need at least 2."
        )
    return model_frame.reset_index(drop=True)


def fit_spec(
    spec: ModelSpec,
    data: PreparedDataset | pd.DataFrame,
    *,
    n_nodes: int = QUADRATURE_NODES,
    maxiter: int = MAX_ITERATIONS,
) -> FittedModel:
    """Fit the negative-binomial GLMM described by spec."""

    frame = data.frame if isinstance(data, PreparedDataset) else data
    model_frame = _model_frame(spec, frame)
    endog, exog = patsy.dmatrices(
        spec.formula, model_frame, return_type="dataframe", NA_action="raise"
    )
    model = NegativeBinomialMixedModel(
        endog.iloc[:, 0], exog, model_frame[spec.group].astype(str), n_nodes=n_nodes
    )

    with warnings.catch_warnings():
        # Optimizer and Hessian warnings are reported through the converged flag.
        warnings.simplefilter("ignore")
        result = model.fit(
            start_params=model.start_values(),
            method="bfgs",
            maxiter=maxiter,
            disp=False,
            skip_hessian=True,
        )
        params = np.asarray(result.params, dtype=float)
        hessian = model.hessian(params)

    retvals = getattr(result, "mle_retvals", {}) or {}
    converged = bool(retvals.get("converged", False)) and bool(np.all(np.isfinite(params)))
    if converged:
        message = "converged"
    else:
        message = f"optimizer stopped with warnflag={retvals.get('warnflag', 'n/a')}"

    k_fe = model.k_fe
    if np.all(np.isfinite(hessian)):
        covariance = np.linalg.pinv(-hessian)
    else:
        covariance = np.full_like(hessian, np.nan)
    names = list(exog.columns)
    beta, alpha, sigma = model._unpack(params)

    fitted = FittedModel(
        spec=spec,
        params=pd.Series(beta, index=names),
        cov_params=pd.DataFrame(covariance[:k_fe, :k_fe], index=names, columns=names),
        alpha=alpha,
        sigma=sigma,
        random_effects=pd.Series(
            model.random_effects(params), index=list(model.group_levels)
        ),
        llf=model.loglike(params),
        nobs=int(model.endog.shape[0]),
        k_params=len(params),
        converged=converged,
        message=message,
        exog=pd.DataFrame(exog.to_numpy(), index=exog.index, columns=names),
        endog=np.asarray(model.endog, dtype=float),
        group_codes=model.group_codes,
        data=model_frame,
    )

    if not fitted.converged:
        logger.warning("Fit of %s did not converge: %s", spec.formula, message)
        warnings.warn(
            f"Negative-binomial GLMM '{spec.formula}' did not converge ({message}); "
            "estimates are provisional.",
            ConvergenceWarning,
            stacklevel=2,
        )
    else:
        logger.debug(
            "Fitted %s: llf=%.3f alpha=%.3f sigma=%.3f", spec.formula, fitted.llf, alpha, sigma
        )
    return fitted


def fit(
    response: str,
    terms: Sequence[str],
    interactions: Sequence[tuple[str, str]],
    group: str,
    data: PreparedDataset | pd.DataFrame,
    **kwargs,
) -> FittedModel:
    """Fit ``response ~ terms + interactions + (1 | group)``."""

    spec = ModelSpec(
        response=response,
        terms=tuple(terms),
        interactions=tuple(interactions),
        group=group,
    )
    return fit_spec(spec, data, **kwargs)
