"""
Negative binomial building blocks for count GLMs.

The model is ``y ~ NB(mu, phi)`` with variance ``mu + phi * mu**2`` and a
log link ``log(mu) = offset + X @ beta``. This module holds the
per-gene primitives used by the dispersion estimator and the GLM
fitter: log-likelihood, unit deviance, an IRLS solver for one gene, and
the Cox-Reid adjusted profile log-likelihood.

References:
    - McCullagh P, Nelder JA (1989). Generalized Linear Models, 2nd ed.
    - Cox DR, Reid N (1987). Parameter orthogonality and approximate
      conditional inference. JRSS B 49:1-39
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression
      analysis of multifactor RNA-Seq experiments with respect to
      biological variation. Nucleic Acids Research 40:4288-4297
"""

from collections import namedtuple

import numpy as np
from scipy.special import gammaln

# below this the NB is evaluated as a Poisson
POISSON_DISP = 1e-12
MIN_MU = 1e-10
MAX_ETA = 700.0
MIN_EIGEN = 1e-10

GeneFit = namedtuple("GeneFit", ["beta", "mu", "deviance", "converged", "iterations"])


def _mean(X, beta, offset):
    eta = offset + X @ beta
    return np.exp(np.clip(eta, np.log(MIN_MU), MAX_ETA))


def nb_loglik(y, mu, dispersion):
    """
    Negative binomial log-likelihood summed over observations.

    Parameters
    ----------
    y : np.ndarray
        Observed counts.
    mu : np.ndarray
        Means, same shape as ``y``.
    dispersion : float
        phi, with variance ``mu + phi * mu**2``.

    Returns
    -------
    float
    """
    y = np.asarray(y, dtype=float)
    mu = np.maximum(np.asarray(mu, dtype=float), MIN_MU)

    if dispersion < POISSON_DISP:
        return float(np.sum(y * np.log(mu) - mu - gammaln(y + 1.0)))

    r = 1.0 / dispersion
    phi_mu = dispersion * mu
    ll = (gammaln(y + r) - gammaln(r) - gammaln(y + 1.0)
          + y * (np.log(phi_mu) - np.log1p(phi_mu)) - r * np.log1p(phi_mu))
    return float(np.sum(ll))


def unit_deviance(y, mu, dispersion):
    """
    Per-observation NB deviance.

    ``2 * [y log(y/mu) - (y + 1/phi) * log((1 + phi y) / (1 + phi mu))]``,
    reducing to the Poisson deviance ``2 * [y log(y/mu) - (y - mu)]`` for
    phi below ``POISSON_DISP``.
    """
    y = np.asarray(y, dtype=float)
    mu = np.maximum(np.asarray(mu, dtype=float), MIN_MU)
    with np.errstate(divide="ignore", invalid="ignore"):
        ylogy = np.where(y > 0, y * np.log(y / mu), 0.0)

    if dispersion < POISSON_DISP:
        dev = 2.0 * (ylogy - (y - mu))
    else:
        dev = 2.0 * (ylogy - (y + 1.0 / dispersion)
                     * (np.log1p(dispersion * y) - np.log1p(dispersion * mu)))
    return np.maximum(dev, 0.0)


def nb_deviance(y, mu, dispersion):
    return float(np.sum(unit_deviance(y, mu, dispersion)))


def irls_weights(mu, dispersion):
    return mu / (1.0 + dispersion * mu)


def initial_beta(y, X, offset):
    """Least-squares start on ``log(y + 0.5) - offset``."""
    z = np.log(np.asarray(y, dtype=float) + 0.5) - offset
    beta, *_ = np.linalg.lstsq(X, z, rcond=None)
    return beta


def fit_gene(y, X, offset, dispersion, beta0=None, max_iter=50, tol=1e-8):
    """
    Fit one gene's NB log-linear model by IRLS.

    Parameters
    ----------
    y : np.ndarray
        Counts of one gene (samples,).
    X : np.ndarray
        Design matrix (samples x coefficients), full column rank.
    offset : np.ndarray
        Log effective library sizes (samples,).
    dispersion : float
        Gene's dispersion phi.
    beta0 : np.ndarray, optional
        Starting coefficients; least squares on log counts if None.
    max_iter : int, default 50
    tol : float, default 1e-8
        Convergence when ``|dev - dev_old| / (|dev| + 0.1) < tol``.

    Returns
    -------
    GeneFit
        ``(beta, mu, deviance, converged, iterations)``. If the iteration
        budget runs out or the normal equations become singular, the last
        iterate is returned with ``converged=False``.

    Notes
    -----
    Each iteration uses weights ``w = mu / (1 + phi mu)`` and working
    response ``z = log(mu) - offset + (y - mu) / mu`` and solves
    ``X'WX beta = X'Wz``. A step that increases the deviance is halved
    up to ten times before being accepted.
    """
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    offset = np.asarray(offset, dtype=float)

    beta = initial_beta(y, X, offset) if beta0 is None else np.array(beta0, dtype=float)
    mu = _mean(X, beta, offset)
    dev = nb_deviance(y, mu, dispersion)

    converged = False
    it = 0
    for it in range(1, max_iter + 1):
        w = irls_weights(mu, dispersion)
        z = np.log(mu) - offset + (y - mu) / mu
        XtW = X.T * w
        try:
            beta_new = np.linalg.solve(XtW @ X, XtW @ z)
        except np.linalg.LinAlgError:
            break
        if not np.all(np.isfinite(beta_new)):
            break

        mu_new = _mean(X, beta_new, offset)
        dev_new = nb_deviance(y, mu_new, dispersion)

        # step halving
        step = 0
        while dev_new > dev * (1.0 + 1e-12) + 1e-12 and step < 10:
            beta_new = 0.5 * (beta + beta_new)
            mu_new = _mean(X, beta_new, offset)
            dev_new = nb_deviance(y, mu_new, dispersion)
            step += 1

        change = abs(dev_new - dev) / (abs(dev_new) + 0.1)
        beta, mu, dev = beta_new, mu_new, dev_new
        if change < tol:
            converged = True
            break

    return GeneFit(beta, mu, dev, converged, it)


def cox_reid_adjustment(X, mu, dispersion):
    """
    ``-0.5 * log det(X' W X)`` with NB working weights.

    Eigenvalues are floored at ``MIN_EIGEN`` so coefficients whose fitted
    means all go to zero do not produce an infinite adjustment.
    """
    w = irls_weights(mu, dispersion)
    info = (X.T * w) @ X
    eig = np.linalg.eigvalsh(info)
    return -0.5 * float(np.sum(np.log(np.maximum(eig, MIN_EIGEN))))


def adjusted_profile_loglik(y, X, offset, dispersion, beta0=None, max_iter=50, tol=1e-8):
    """
    Cox-Reid adjusted profile log-likelihood of one gene at ``dispersion``.

    The mean parameters are profiled out by an IRLS fit at the given
    dispersion.

    Returns
    -------
    apl : float
    fit : GeneFit
        The fit at this dispersion, usable as a warm start for the next.
    """
    fit = fit_gene(y, X, offset, dispersion, beta0=beta0, max_iter=max_iter, tol=tol)
    apl = nb_loglik(y, fit.mu, dispersion) + cox_reid_adjustment(X, fit.mu, dispersion)
    return apl, fit


def failed_fit(index, exc, n_coefs, n_samples):
    """Placeholder fit for a gene whose computation raised."""
    return GeneFit(np.full(n_coefs, np.nan), np.full(n_samples, np.nan), np.nan, False, 0)
