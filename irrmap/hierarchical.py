"""Two level binomial regression with small area random effects

Model Architecture:
    logit P(y_ij = 1) = b0 + b1 * s_ij + u_i                  (fixed slope)
    logit P(y_ij = 1) = b0 + (b1 + v_i) * s_ij + u_i          (random slope)

Where:
    - y_ij is the binary label of unit j in small area i
    - s_ij is the spatial (ensemble) score of the unit
    - b0, b1 are population level (fixed) effects
    - u_i ~ N(0, tau^2), or (u_i, v_i) ~ MVN(0, Sigma), are area random effects

Parameters are estimated by maximum marginal likelihood, integrating the random
effects out with the Laplace approximation (the approach of ``lme4::glmer``
with ``nAGQ=1``). For given fixed effects and covariance, the conditional modes
of the random effects are found per area by penalized Newton iterations; the
outer optimization runs over the fixed effects and the log-Cholesky factor of
the covariance. The conditional modes are the reported area offsets; they are
shrunk toward zero, the more so the fewer units an area has.

Fit outcomes are three-fold:
    - the optimizer fails: ``ConvergenceError`` is raised, no model exists
    - the model is fitted but degenerate (variance on the boundary, perfectly
      correlated random effects, non positive definite information matrix):
      the model is returned with ``status == 'singular'`` and ``reliable`` False
    - the model is fitted and regular: ``status == 'ok'``

A Bayesian variant (``fit(..., method='bayes')``, requires the ``bayes`` extra)
samples the same model with pymc under weakly informative priors; posterior
means take the place of the point estimates and highest density intervals are
reported alongside.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import expit
from scipy.stats import chi2

from irrmap.errors import ConvergenceError, DataIntegrityError

logger = logging.getLogger(__name__)

LOG_SD_BOUNDS = (-8.0, 5.0)
SINGULAR_SD = 1e-3
SINGULAR_CORR = 0.99
FIXED_PRIOR_SD = 5.0
RE_PRIOR_SD = 2.0
RHAT_MAX = 1.1


@dataclass(frozen=True, eq=False)
class FittedHierarchicalModel:
    """Fixed effects and per area random effects on the logit scale

    Attributes:
        intercept, slope (float): Population level coefficients b0, b1
        intercept_se, slope_se (float): Their standard errors (NaN when the
            information matrix is not positive definite)
        cov (np.ndarray): Random effects covariance, shape (1, 1) or (2, 2)
        areas (pd.DataFrame): Indexed by area id, with columns ``n`` (units),
            ``u``, ``u_se`` and, for random slope models, ``v``, ``v_se``
        loglik (float): Laplace approximated marginal log likelihood
        n_obs (int): Number of units
        status (str): ``'ok'`` or ``'singular'``
        warnings (tuple): Reasons for a singular status
        method (str): ``'laplace'`` or ``'bayes'``
        intervals (pd.DataFrame): Posterior summary (``mean``, ``sd``, ``lower``,
            ``upper``) of the fixed effects and random effect standard
            deviations (and correlation). None for Laplace fits
    """
    intercept: float
    slope: float
    intercept_se: float
    slope_se: float
    cov: np.ndarray
    areas: pd.DataFrame
    loglik: float
    n_obs: int
    status: str = 'ok'
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    method: str = 'laplace'
    intervals: Optional[pd.DataFrame] = field(default=None, repr=False)

    @property
    def random_slope(self) -> bool:
        return self.cov.shape[0] == 2

    @property
    def n_params(self) -> int:
        q = self.cov.shape[0]
        return 2 + q * (q + 1) // 2

    @property
    def aic(self) -> float:
        return -2 * self.loglik + 2 * self.n_params

    @property
    def bic(self) -> float:
        return -2 * self.loglik + self.n_params * np.log(self.n_obs)

    @property
    def tau(self) -> float:
        """Standard deviation of the random intercepts"""
        return float(np.sqrt(self.cov[0, 0]))

    @property
    def corr(self) -> float:
        """Correlation of random intercepts and slopes (NaN for fixed slope models)"""
        if not self.random_slope:
            return np.nan
        denom = np.sqrt(self.cov[0, 0] * self.cov[1, 1])
        return float(self.cov[0, 1] / denom) if denom > 0 else np.nan

    @property
    def reliable(self) -> bool:
        return self.status == 'ok'

    def coef(self) -> pd.DataFrame:
        """Per area combined coefficients (fixed plus random), as ``coef()`` in lme4

        Returns:
            pd.DataFrame: Indexed by area id with ``intercept`` and ``slope`` columns
        """
        v = self.areas['v'] if self.random_slope else 0.0
        return pd.DataFrame({'intercept': self.intercept + self.areas['u'],
                             'slope': self.slope + v},
                            index=self.areas.index)

    def predict(self, score, area_ids=None) -> np.ndarray:
        """Probabilities for units given their score and (optionally) area

        Units of areas without a random effect (or with ``area_ids`` None) get
        the population level prediction.
        """
        score = np.asarray(score, dtype=np.float64)
        u = np.zeros_like(score)
        v = np.zeros_like(score)
        if area_ids is not None:
            idx = pd.Index(self.areas.index).get_indexer(np.asarray(area_ids))
            known = idx >= 0
            u[known] = self.areas['u'].to_numpy()[idx[known]]
            if self.random_slope:
                v[known] = self.areas['v'].to_numpy()[idx[known]]
        eta = self.intercept + u + (self.slope + v) * score
        return expit(eta)

    def summary(self) -> pd.Series:
        return pd.Series({'random_slope': self.random_slope,
                          'intercept': self.intercept,
                          'intercept_se': self.intercept_se,
                          'slope': self.slope,
                          'slope_se': self.slope_se,
                          'tau': self.tau,
                          'corr': self.corr,
                          'loglik': self.loglik,
                          'aic': self.aic,
                          'bic': self.bic,
                          'n_obs': self.n_obs,
                          'n_areas': len(self.areas),
                          'status': self.status,
                          'method': self.method})


class LaplaceDeviance:
    """Laplace approximated marginal log likelihood of the binomial GLMM

    Args:
        y (np.ndarray): 0/1 labels
        score (np.ndarray): Spatial score of each unit
        groups (np.ndarray): Integer area codes in ``range(n_groups)``
        n_groups (int): Number of areas
        random_slope (bool): Whether the score slope varies by area
    """
    def __init__(self, y, score, groups, n_groups, random_slope=False):
        self.y = np.asarray(y, dtype=np.float64)
        self.X = np.column_stack([np.ones_like(self.y), np.asarray(score, dtype=np.float64)])
        self.Z = self.X if random_slope else self.X[:, :1]
        self.g = np.asarray(groups)
        self.m = n_groups
        self.q = self.Z.shape[1]
        self.b = np.zeros((self.m, self.q))

    @property
    def n_theta(self) -> int:
        return 2 + self.q * (self.q + 1) // 2

    def unpack(self, theta):
        """Fixed effects and lower Cholesky factor from the parameter vector"""
        beta = np.asarray(theta[:2])
        L = np.zeros((self.q, self.q))
        L[0, 0] = np.exp(theta[2])
        if self.q == 2:
            L[1, 0] = theta[3]
            L[1, 1] = np.exp(theta[4])
        return beta, L

    def bounds(self):
        if self.q == 1:
            return [(None, None), (None, None), LOG_SD_BOUNDS]
        return [(None, None), (None, None), LOG_SD_BOUNDS, (-20.0, 20.0), LOG_SD_BOUNDS]

    def _group_sum(self, values):
        return np.bincount(self.g, weights=values, minlength=self.m)

    def _conditional(self, beta, b, sigma_inv):
        eta = self.X @ beta + np.einsum('nq,nq->n', self.Z, b[self.g])
        ll = self._group_sum(self.y * eta - np.logaddexp(0.0, eta))
        penalty = 0.5 * np.einsum('mi,ij,mj->m', b, sigma_inv, b)
        return eta, ll - penalty

    def _hessian(self, w, sigma_inv):
        H = np.empty((self.m, self.q, self.q))
        for a in range(self.q):
            for c in range(a, self.q):
                s = self._group_sum(w * self.Z[:, a] * self.Z[:, c])
                H[:, a, c] = s
                H[:, c, a] = s
        return H + sigma_inv

    def modes(self, beta, sigma_inv, b0=None, tol=1e-10, maxiter=100):
        """Conditional modes of the random effects, by damped Newton iterations

        Returns:
            tuple: ``(b, h, H)`` modes (m, q), penalized conditional log
            likelihood per area (m,) and negative Hessian per area (m, q, q)
        """
        b = self.b.copy() if b0 is None else b0.copy()
        eta, h = self._conditional(beta, b, sigma_inv)
        for _ in range(maxiter):
            p = expit(eta)
            r = self.y - p
            grad = np.column_stack([self._group_sum(self.Z[:, a] * r)
                                    for a in range(self.q)]) - b @ sigma_inv
            H = self._hessian(p * (1 - p), sigma_inv)
            step = np.linalg.solve(H, grad[..., None])[..., 0]
            t = np.ones(self.m)
            for _ in range(30):
                b_new = b + t[:, None] * step
                eta_new, h_new = self._conditional(beta, b_new, sigma_inv)
                worse = h_new < h - 1e-12
                if not worse.any():
                    break
                t = np.where(worse, t / 2, t)
            b, eta, h = b_new, eta_new, h_new
            if np.max(np.abs(step)) < tol:
                break
        p = expit(eta)
        return b, h, self._hessian(p * (1 - p), sigma_inv)

    def loglik(self, theta, update=True) -> float:
        beta, L = self.unpack(theta)
        sigma = L @ L.T
        sigma_inv = np.linalg.inv(sigma)
        logdet_sigma = 2 * np.sum(np.log(np.diag(L)))
        b, h, H = self.modes(beta, sigma_inv)
        if update and np.all(np.isfinite(b)):
            self.b = b
        _, logdet_h = np.linalg.slogdet(H)
        return float(np.sum(h - 0.5 * logdet_sigma - 0.5 * logdet_h))

    def objective(self, theta) -> float:
        ll = self.loglik(theta)
        return -ll if np.isfinite(ll) else 1e300


def _pooled_logit(X, y, ridge=1e-2, maxiter=50):
    """Starting values for the fixed effects from a (lightly ridged) pooled fit"""
    beta = np.zeros(X.shape[1])
    for _ in range(maxiter):
        p = expit(X @ beta)
        grad = X.T @ (y - p) - ridge * beta
        H = X.T @ (X * (p * (1 - p))[:, None]) + ridge * np.eye(X.shape[1])
        step = np.linalg.solve(H, grad)
        beta = beta + step
        if np.max(np.abs(step)) < 1e-8:
            break
    return np.clip(beta, -10, 10)


def _numerical_hessian(f, x, rel_step=1e-3):
    """Central difference Hessian of a scalar function"""
    x = np.asarray(x, dtype=np.float64)
    k = x.size
    h = rel_step * np.maximum(1.0, np.abs(x))
    H = np.empty((k, k))
    for i in range(k):
        for j in range(i, k):
            ei = np.zeros(k)
            ej = np.zeros(k)
            ei[i] = h[i]
            ej[j] = h[j]
            val = (f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)) / (4 * h[i] * h[j])
            H[i, j] = val
            H[j, i] = val
    return H


def _validate_inputs(y, area_ids, score):
    y = np.asarray(y)
    score = np.asarray(score, dtype=np.float64)
    area_ids = pd.Series(np.asarray(area_ids))
    if not (len(y) == len(score) == len(area_ids)):
        raise DataIntegrityError(
            f"Inconsistent lengths: {len(y)} labels, {len(area_ids)} area ids, {len(score)} scores")
    if len(y) == 0:
        raise DataIntegrityError("No observations to fit")
    if area_ids.isna().any():
        raise DataIntegrityError("Missing small area identifiers")
    if not np.all(np.isfinite(score)):
        raise DataIntegrityError("Missing or non finite spatial scores")
    if not np.isin(y, [0, 1]).all():
        raise DataIntegrityError("Labels must be encoded as 0 and 1")
    return y.astype(np.float64), area_ids, score


def fit(y, area_ids, score, random_slope: bool = False, maxiter: int = 1000,
        method: str = 'laplace', **sampler) -> FittedHierarchicalModel:
    """Fit the binomial random effects model by maximum marginal likelihood

    Args:
        y (array-like): 0/1 labels of the surveyed units
        area_ids (array-like): Small area identifier of each unit. Only areas
            with at least one unit receive a random effect
        score (array-like): Spatial (ensemble) score of each unit
        random_slope (bool): Let the score slope vary by area
        maxiter (int): Maximum number of outer optimizer iterations
        method (str): ``'laplace'`` (maximum marginal likelihood) or ``'bayes'``
            (posterior sampling, see :func:`fit_bayes`)
        **sampler: Options passed to :func:`fit_bayes` when ``method == 'bayes'``

    Raises:
        ConvergenceError: If the marginal likelihood optimization does not
            converge
        DataIntegrityError: On inconsistent or incomplete inputs

    Returns:
        FittedHierarchicalModel
    """
    if method == 'bayes':
        return fit_bayes(y, area_ids, score, random_slope=random_slope, **sampler)
    if method != 'laplace':
        raise ValueError(f"Unknown fitting method '{method}'")
    if sampler:
        raise TypeError(f"Unexpected options for the laplace method: {sorted(sampler)}")
    y, area_ids, score = _validate_inputs(y, area_ids, score)
    codes, uniques = pd.factorize(area_ids, sort=True)
    dev = LaplaceDeviance(y, score, codes, len(uniques), random_slope=random_slope)

    theta0 = np.zeros(dev.n_theta)
    theta0[:2] = _pooled_logit(dev.X, y)
    theta0[2] = np.log(0.5)
    if random_slope:
        theta0[4] = np.log(0.5)

    label = 'random slope' if random_slope else 'fixed slope'
    logger.info("Fitting %s model on %d units in %d areas", label, len(y), len(uniques))
    res = minimize(dev.objective, theta0, method='L-BFGS-B', bounds=dev.bounds(),
                   options={'maxiter': maxiter})
    if not res.success:
        logger.info("L-BFGS-B stopped (%s); refining with Nelder-Mead", res.message)
        res = minimize(dev.objective, res.x, method='Nelder-Mead', bounds=dev.bounds(),
                       options={'maxiter': maxiter * dev.n_theta, 'xatol': 1e-6, 'fatol': 1e-8})
    if not res.success or not np.isfinite(res.fun) or res.fun >= 1e300:
        raise ConvergenceError(f"{label} model did not converge: {res.message}")
    theta = res.x

    beta, L = dev.unpack(theta)
    sigma = L @ L.T
    dev.b = np.zeros_like(dev.b)
    b, _, H = dev.modes(beta, np.linalg.inv(sigma), b0=np.zeros_like(dev.b))
    dev.b = b
    loglik = dev.loglik(theta)

    notes = []
    if np.any(np.sqrt(np.diag(sigma)) < SINGULAR_SD):
        notes.append("random effect variance estimated on the boundary (zero)")
    if random_slope:
        corr = sigma[0, 1] / np.sqrt(sigma[0, 0] * sigma[1, 1])
        if abs(corr) >= SINGULAR_CORR:
            notes.append(f"random intercepts and slopes perfectly correlated ({corr:.3f})")

    info = _numerical_hessian(lambda t: -dev.loglik(t, update=False), theta)
    beta_se = np.full(2, np.nan)
    try:
        eig = np.linalg.eigvalsh(info)
        if np.all(eig > 0):
            beta_se = np.sqrt(np.diag(np.linalg.inv(info))[:2])
        else:
            notes.append("information matrix is not positive definite")
    except np.linalg.LinAlgError:
        notes.append("information matrix is singular")

    cond_var = np.linalg.inv(H)
    areas = pd.DataFrame({'n': np.bincount(codes, minlength=len(uniques)),
                          'u': b[:, 0],
                          'u_se': np.sqrt(cond_var[:, 0, 0])},
                         index=pd.Index(uniques, name='area_id'))
    if random_slope:
        areas['v'] = b[:, 1]
        areas['v_se'] = np.sqrt(cond_var[:, 1, 1])

    status = 'singular' if notes else 'ok'
    for note in notes:
        logger.warning("%s model is degenerate: %s", label, note)
    return FittedHierarchicalModel(intercept=float(beta[0]),
                                   slope=float(beta[1]),
                                   intercept_se=float(beta_se[0]),
                                   slope_se=float(beta_se[1]),
                                   cov=sigma,
                                   areas=areas,
                                   loglik=loglik,
                                   n_obs=len(y),
                                   status=status,
                                   warnings=tuple(notes))


def _posterior_row(stats, name, *idx):
    return [float(np.asarray(s[name])[idx]) for s in stats]


def fit_bayes(y, area_ids, score, random_slope: bool = False, draws: int = 1000,
              tune: int = 1000, chains: int = 2, seed: Optional[int] = None,
              credible: float = 0.95) -> FittedHierarchicalModel:
    """Sample the binomial random effects model with pymc

    Priors are weakly informative: ``Normal(0, 5)`` on the fixed effects,
    ``HalfNormal(2)`` on the random effect standard deviations and, for random
    slope models, an ``LKJ(2)`` prior on their correlation. Area effects use a
    non-centred parametrization.

    Args:
        y, area_ids, score: As in :func:`fit`
        random_slope (bool): Let the score slope vary by area
        draws (int): Posterior draws per chain, after ``tune`` tuning steps
        chains (int): Number of chains
        seed (int): Sampler seed
        credible (float): Probability mass of the highest density intervals

    Raises:
        ConvergenceError: If the chains of a population level parameter did not
            mix (R-hat above ``RHAT_MAX``)

    Returns:
        FittedHierarchicalModel: Posterior means as point estimates, posterior
        standard deviations as standard errors, intervals in ``intervals`` and
        in the ``*_lower`` / ``*_upper`` columns of ``areas``. ``loglik`` is the
        Laplace marginal log likelihood at the posterior means, so that AIC
        stays comparable with :func:`fit`
    """
    import arviz as az
    import pymc as pm

    y, area_ids, score = _validate_inputs(y, area_ids, score)
    codes, uniques = pd.factorize(area_ids, sort=True)
    label = 'random slope' if random_slope else 'fixed slope'
    logger.info("Sampling %s model on %d units in %d areas (%d chains of %d draws)",
                label, len(y), len(uniques), chains, draws)

    coords = {'area': np.asarray(uniques), 'effect': ['u', 'v']}
    with pm.Model(coords=coords):
        b0 = pm.Normal('intercept', mu=0.0, sigma=FIXED_PRIOR_SD)
        b1 = pm.Normal('slope', mu=0.0, sigma=FIXED_PRIOR_SD)
        if random_slope:
            chol, _, _ = pm.LKJCholeskyCov('chol', n=2, eta=2.0,
                                           sd_dist=pm.HalfNormal.dist(sigma=RE_PRIOR_SD, shape=2),
                                           compute_corr=True)
            z = pm.Normal('z', mu=0.0, sigma=1.0, dims=('area', 'effect'))
            b = pm.math.dot(z, chol.T)
            u = pm.Deterministic('u', b[:, 0], dims='area')
            v = pm.Deterministic('v', b[:, 1], dims='area')
            eta = b0 + u[codes] + (b1 + v[codes]) * score
        else:
            tau = pm.HalfNormal('tau', sigma=RE_PRIOR_SD)
            z = pm.Normal('z', mu=0.0, sigma=1.0, dims='area')
            u = pm.Deterministic('u', z * tau, dims='area')
            eta = b0 + u[codes] + b1 * score
        pm.Bernoulli('y', logit_p=eta, observed=y)
        trace = pm.sample(draws=draws, tune=tune, chains=chains, random_seed=seed,
                          target_accept=0.9, progressbar=False)

    population = ['intercept', 'slope'] + (['chol_stds', 'chol_corr'] if random_slope else ['tau'])
    names = population + (['u', 'v'] if random_slope else ['u'])
    post = trace.posterior[names]
    hdi = az.hdi(trace, hdi_prob=credible, var_names=names)
    stats = (post.mean(dim=('chain', 'draw')),
             post.std(dim=('chain', 'draw')),
             hdi.sel(hdi='lower'),
             hdi.sel(hdi='higher'))

    rows = {'intercept': _posterior_row(stats, 'intercept'),
            'slope': _posterior_row(stats, 'slope')}
    if random_slope:
        rows['sd_intercept'] = _posterior_row(stats, 'chol_stds', 0)
        rows['sd_slope'] = _posterior_row(stats, 'chol_stds', 1)
        rows['corr'] = _posterior_row(stats, 'chol_corr', 0, 1)
    else:
        rows['sd_intercept'] = _posterior_row(stats, 'tau')
    intervals = pd.DataFrame.from_dict(rows, orient='index',
                                       columns=['mean', 'sd', 'lower', 'upper'])

    rhat = az.rhat(trace, var_names=population)
    worst = max(float(np.nanmax(rhat[name].values)) for name in population)
    if worst > RHAT_MAX:
        raise ConvergenceError(f"{label} model chains did not mix (R-hat {worst:.3f})")

    s0 = intervals.loc['sd_intercept', 'mean']
    theta = [intervals.loc['intercept', 'mean'], intervals.loc['slope', 'mean'],
             np.clip(np.log(s0), *LOG_SD_BOUNDS)]
    if random_slope:
        s1 = intervals.loc['sd_slope', 'mean']
        r = intervals.loc['corr', 'mean']
        sigma = np.array([[s0 ** 2, r * s0 * s1], [r * s0 * s1, s1 ** 2]])
        theta += [r * s1, np.clip(np.log(s1 * np.sqrt(1 - r ** 2)), *LOG_SD_BOUNDS)]
    else:
        sigma = np.array([[s0 ** 2]])
    dev = LaplaceDeviance(y, score, codes, len(uniques), random_slope=random_slope)
    loglik = dev.loglik(np.asarray(theta), update=False)

    notes = []
    if np.any(np.sqrt(np.diag(sigma)) < SINGULAR_SD):
        notes.append("random effect variance estimated on the boundary (zero)")
    if random_slope and abs(intervals.loc['corr', 'mean']) >= SINGULAR_CORR:
        notes.append(f"random intercepts and slopes perfectly correlated "
                     f"({intervals.loc['corr', 'mean']:.3f})")
    divergent = int(trace.sample_stats['diverging'].sum())
    if divergent:
        notes.append(f"{divergent} divergent transitions after tuning")

    areas = pd.DataFrame({'n': np.bincount(codes, minlength=len(uniques))},
                         index=pd.Index(uniques, name='area_id'))
    for effect in ('u', 'v') if random_slope else ('u',):
        mean, sd, lower, upper = (np.asarray(s[effect]) for s in stats)
        areas[effect] = mean
        areas[f'{effect}_se'] = sd
        areas[f'{effect}_lower'] = lower
        areas[f'{effect}_upper'] = upper

    status = 'singular' if notes else 'ok'
    for note in notes:
        logger.warning("%s model is degenerate: %s", label, note)
    return FittedHierarchicalModel(intercept=intervals.loc['intercept', 'mean'],
                                   slope=intervals.loc['slope', 'mean'],
                                   intercept_se=intervals.loc['intercept', 'sd'],
                                   slope_se=intervals.loc['slope', 'sd'],
                                   cov=sigma,
                                   areas=areas,
                                   loglik=loglik,
                                   n_obs=len(y),
                                   status=status,
                                   warnings=tuple(notes),
                                   method='bayes',
                                   intervals=intervals)


def fit_observations(store, score: str = 'score', random_slope: bool = False,
                     **kwargs) -> FittedHierarchicalModel:
    """Fit the model from an :class:`irrmap.observations.ObservationStore`

    Args:
        store (ObservationStore): Labelled observations
        score (str): Name of the column of ``store.data`` holding the spatial score
    """
    if score not in store.data.columns:
        raise DataIntegrityError(f"Observations have no '{score}' column")
    return fit(store.labels(), store.data[store.area], store.data[score],
               random_slope=random_slope, **kwargs)


@dataclass(frozen=True, eq=False)
class ModelSelection:
    """Outcome of the fixed versus random slope comparison

    Attributes:
        chosen (FittedHierarchicalModel): The retained model
        fixed (FittedHierarchicalModel): Fixed slope fit
        random (FittedHierarchicalModel): Random slope fit, None if it did not
            converge
        delta_aic (float): AIC(fixed) - AIC(random); positive favours random slopes
        lr_stat (float): Likelihood ratio statistic
        p_value (float): Chi-squared (2 df) p-value of the likelihood ratio test
        reason (str): Why the chosen model was retained
    """
    chosen: FittedHierarchicalModel
    fixed: FittedHierarchicalModel
    random: Optional[FittedHierarchicalModel]
    delta_aic: float
    lr_stat: float
    p_value: float
    reason: str


def choose_model(fixed: FittedHierarchicalModel,
                 random: Optional[FittedHierarchicalModel],
                 delta_aic: float = 4.0,
                 max_abs_corr: float = 0.9) -> ModelSelection:
    """Prefer the fixed slope model unless random slopes are materially better

    The random slope model is retained only when all of the following hold:
    it converged; it is not singular; it lowers AIC by at least ``delta_aic``;
    the absolute correlation of its random intercepts and slopes does not
    exceed ``max_abs_corr``.
    """
    if random is None:
        return ModelSelection(fixed, fixed, None, np.nan, np.nan, np.nan,
                              "random slope model did not converge")
    d_aic = fixed.aic - random.aic
    lr = max(0.0, 2 * (random.loglik - fixed.loglik))
    p = float(chi2.sf(lr, df=random.n_params - fixed.n_params))
    if not random.reliable:
        reason = "random slope model is singular: " + "; ".join(random.warnings)
        chosen = fixed
    elif abs(random.corr) > max_abs_corr:
        reason = f"random effects correlation {random.corr:.3f} exceeds {max_abs_corr}"
        chosen = fixed
    elif d_aic < delta_aic:
        reason = f"AIC improvement {d_aic:.2f} below threshold {delta_aic}"
        chosen = fixed
    else:
        reason = f"AIC improvement {d_aic:.2f} with correlation {random.corr:.3f}"
        chosen = random
    logger.info("Selected %s model: %s",
                'random slope' if chosen is random else 'fixed slope', reason)
    return ModelSelection(chosen, fixed, random, d_aic, lr, p, reason)


def select_model(y, area_ids, score, delta_aic: float = 4.0,
                 max_abs_corr: float = 0.9, **kwargs) -> ModelSelection:
    """Fit both fixed and random slope models and retain one

    Raises:
        ConvergenceError: If the fixed slope model itself does not converge
    """
    fixed = fit(y, area_ids, score, random_slope=False, **kwargs)
    try:
        random = fit(y, area_ids, score, random_slope=True, **kwargs)
    except ConvergenceError as e:
        logger.warning("Falling back to fixed slope model: %s", e)
        random = None
    return choose_model(fixed, random, delta_aic=delta_aic, max_abs_corr=max_abs_corr)
