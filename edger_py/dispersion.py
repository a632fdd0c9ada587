"""
Negative binomial dispersion estimation.

Dispersions are estimated in three passes:

1. Common: one value for all genes, maximizing the summed Cox-Reid
   adjusted profile log-likelihood (APL).
2. Trended: each gene's own APL maximizer, smoothed against average
   log-CPM by LOWESS.
3. Tagwise: empirical Bayes shrinkage of each gene's estimate towards
   the trend, with the prior degrees of freedom estimated from the data.

The APL of every gene is evaluated once on a log2-spaced grid of
dispersions; the common estimate interpolates the summed grid and the
gene-wise estimates refine their grid maximum by bounded search.

References:
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression
      analysis of multifactor RNA-Seq experiments with respect to
      biological variation. Nucleic Acids Research 40:4288-4297
    - Chen Y, Lun ATL, Smyth GK (2014). Differential expression analysis
      of complex RNA-seq experiments using edgeR. In: Statistical
      Analysis of Next Generation Sequencing Data, Springer, 51-74
    - Smyth GK (2004). Linear models and empirical Bayes methods for
      assessing differential expression in microarray experiments.
      Statistical Applications in Genetics and Molecular Biology 3:3
"""

import logging
import warnings
from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd
from scipy.interpolate import CubicSpline
from scipy.optimize import minimize_scalar
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from .config import DispersionConfig, GLMConfig
from .errors import GeneWarning, NumericalWarning, ValidationError, emit
from .nbinom import adjusted_profile_loglik, failed_fit, fit_gene
from .parallel import gene_apply
from .utils import ave_log_cpm, residual_df

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class DispersionEstimate:
    """
    Common, trended and tagwise dispersions.

    Attributes
    ----------
    gene_ids : np.ndarray
    ave_log_cpm : np.ndarray
        Abundance covariate of the trend.
    common : float
    trended : np.ndarray
    tagwise : np.ndarray
        Final per-gene dispersions used for testing.
    raw : np.ndarray
        Per-gene APL maximizers (after clamping).
    prior_df : float
        Prior degrees of freedom of the tagwise shrinkage; ``inf`` means
        tagwise equals trended.
    df_residual : np.ndarray
        Zero-adjusted residual df of each gene.
    span : float
        LOWESS span used for the trend (nan for a constant trend).
    converged : np.ndarray
        False where the gene-wise search did not converge.
    warnings : tuple of GeneWarning
    """

    gene_ids: np.ndarray
    ave_log_cpm: np.ndarray
    common: float
    trended: np.ndarray
    tagwise: np.ndarray
    raw: np.ndarray
    prior_df: float
    df_residual: np.ndarray
    span: float
    converged: np.ndarray
    warnings: tuple = ()

    @property
    def bcv(self):
        """Biological coefficient of variation, ``sqrt(common)``."""
        return float(np.sqrt(self.common))

    def to_frame(self):
        return pd.DataFrame({
            "ave_log_cpm": self.ave_log_cpm,
            "raw": self.raw,
            "trended": self.trended,
            "tagwise": self.tagwise,
            "df_residual": self.df_residual,
            "converged": self.converged,
        }, index=pd.Index(self.gene_ids, name="gene_id"))


def dispersion_grid(grid_length=21, grid_range=(-10.0, 10.0), grid_base=0.1):
    """
    Log2-spaced dispersion grid.

    Returns
    -------
    t : np.ndarray
        Grid exponents, evenly spaced over ``grid_range``.
    grid : np.ndarray
        Dispersions ``grid_base * 2 ** t``.
    """
    t = np.linspace(grid_range[0], grid_range[1], grid_length)
    return t, grid_base * 2.0 ** t


def gene_apl_profile(y, X, offset, t_grid, grid_base, xtol=1e-5, max_iter=50, tol=1e-8):
    """
    APL of one gene over the grid, and its refined maximizer.

    The mean fit at each grid point warm-starts the next. The maximizer
    is refined by bounded search over the exponent ``t`` between the
    grid neighbours of the best grid point.

    Returns
    -------
    apl : np.ndarray
        APL at each grid point.
    raw : float
        Refined dispersion estimate.
    converged : bool
    """
    n = len(t_grid)
    apl = np.empty(n)
    betas = []
    beta = None
    for k in range(n):
        apl[k], fit = adjusted_profile_loglik(
            y, X, offset, grid_base * 2.0 ** t_grid[k], beta0=beta,
            max_iter=max_iter, tol=tol)
        beta = fit.beta
        betas.append(beta)

    k = int(np.argmax(apl))
    lo, hi = t_grid[max(k - 1, 0)], t_grid[min(k + 1, n - 1)]
    start = betas[k]

    def neg_apl(t):
        return -adjusted_profile_loglik(y, X, offset, grid_base * 2.0 ** t, beta0=start,
                                        max_iter=max_iter, tol=tol)[0]

    res = minimize_scalar(neg_apl, bounds=(lo, hi), method="bounded",
                          options={"xatol": xtol})
    t_hat = res.x if -res.fun >= apl[k] else t_grid[k]
    return apl, grid_base * 2.0 ** t_hat, bool(res.success)


def _failed_profile(index, exc, n_grid):
    return np.full(n_grid, np.nan), np.nan, False


def common_dispersion(apl, t_grid, grid_base=0.1, xtol=1e-5):
    """
    Maximize the summed APL over genes.

    The sum is interpolated by a cubic spline in ``t`` and maximized by
    bounded search between the grid neighbours of its best grid point.
    Genes whose profile could not be computed are left out of the sum.
    """
    apl = np.asarray(apl, dtype=float)
    ok = np.all(np.isfinite(apl), axis=1)
    total = apl[ok].sum(axis=0)
    spline = CubicSpline(t_grid, total)

    k = int(np.argmax(total))
    lo, hi = t_grid[max(k - 1, 0)], t_grid[min(k + 1, len(t_grid) - 1)]
    res = minimize_scalar(lambda t: -float(spline(t)), bounds=(lo, hi), method="bounded",
                          options={"xatol": xtol})
    t_hat = res.x if -res.fun >= total[k] else t_grid[k]
    return float(grid_base * 2.0 ** t_hat)


def trend_span(n_genes):
    """Default LOWESS span, wider for fewer genes."""
    if n_genes <= 50:
        return 1.0
    return 0.25 + 0.75 * np.sqrt(50.0 / n_genes)


def trended_dispersion(raw, ave_log_cpm, common, span=None, min_genes=10, iterations=3):
    """
    Smooth log raw dispersions against average log-CPM.

    Parameters
    ----------
    raw : np.ndarray
        Positive gene-wise dispersions.
    ave_log_cpm : np.ndarray
        Covariate, one value per gene.
    common : float
        Used as a constant trend when fewer than ``min_genes`` genes
        are available.
    span : float, optional
        LOWESS fraction; :func:`trend_span` if None.
    iterations : int, default 3
        LOWESS robustness iterations.

    Returns
    -------
    trend : np.ndarray
    span : float
        Span used, or nan for the constant trend.
    """
    raw = np.asarray(raw, dtype=float)
    G = raw.size
    if G < min_genes:
        logger.info("Only %d genes; using the common dispersion as trend", G)
        return np.full(G, common), np.nan

    if span is None:
        span = trend_span(G)
    fitted = lowess(np.log(raw), np.asarray(ave_log_cpm, dtype=float), frac=span,
                    it=iterations, return_sorted=False)
    return np.exp(fitted), float(span)


def logmdigamma(x):
    """``log(x) - digamma(x)``."""
    x = np.asarray(x, dtype=float)
    return np.log(x) - digamma(x)


def trigamma_inverse(x):
    """
    Solve ``trigamma(y) = x`` for y by Newton's method.

    Uses the parametrisation of Smyth (2004), which converges
    monotonically from the starting value ``0.5 + 1/x``.
    """
    x = float(x)
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y = y + dif
        if -dif / y < 1e-8:
            break
    return y


def fit_f_dist(x, df1):
    """
    Moment estimation of a scaled F distribution.

    Treats ``x`` as ``s0^2 * F(df1, d0)`` and estimates the scale
    ``s0^2`` and the prior degrees of freedom ``d0`` from the mean and
    variance of ``log(x)``.

    Parameters
    ----------
    x : np.ndarray
        Positive variance-like statistics.
    df1 : np.ndarray or float
        Degrees of freedom of each statistic.

    Returns
    -------
    s2 : float
        Prior scale; nan if fewer than two usable values.
    d0 : float
        Prior df; ``inf`` if the statistics are no more variable than
        sampling error alone explains, nan if they cannot be estimated.
    """
    x = np.asarray(x, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape)
    ok = np.isfinite(x) & (x > 0) & np.isfinite(df1) & (df1 > 0)
    if ok.sum() < 2:
        return np.nan, np.nan

    x, df1 = x[ok], df1[ok]
    x = np.maximum(x, 1e-5 * np.median(x))
    e = np.log(x) + logmdigamma(df1 / 2.0)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (e.size - 1) - np.mean(polygamma(1, df1 / 2.0))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s2 = float(np.exp(emean - logmdigamma(d0 / 2.0)))
    else:
        d0 = np.inf
        s2 = float(np.exp(emean))
    return s2, float(d0)


def tagwise_dispersion(raw, trend, df_residual, prior_df):
    """
    Shrink gene-wise dispersions towards the trend.

    The weighted-likelihood posterior is approximated on the log scale:
    ``log(tagwise) = (df * log(raw) + d0 * log(trend)) / (df + d0)``.
    Each tagwise value therefore lies between its raw estimate and the
    trend, and genes with more residual df are shrunk less.
    """
    raw = np.asarray(raw, dtype=float)
    trend = np.asarray(trend, dtype=float)
    df = np.asarray(df_residual, dtype=float)
    if np.isinf(prior_df):
        return trend.copy()

    total = df + prior_df
    w = np.divide(df, total, out=np.zeros_like(df), where=total > 0)
    return np.exp(w * np.log(raw) + (1.0 - w) * np.log(trend))


def _clamp(values, gene_ids, min_disp, label, records):
    values = np.array(values, dtype=float)
    bad = ~np.isfinite(values) | (values <= 0)
    for i in np.flatnonzero(bad):
        records.append(GeneWarning(
            str(gene_ids[i]), "dispersion", "numerical",
            f"{label} dispersion {values[i]!r} clamped to {min_disp:g}"))
    values[bad] = min_disp
    return np.maximum(values, min_disp)


def _deviance_fit(y, dispersion, X, offset, max_iter, tol):
    return fit_gene(y, X, offset, dispersion, max_iter=max_iter, tol=tol)


def estimate_dispersions(counts, design, norm, config=None, glm_config=None, n_jobs=1):
    """
    Estimate common, trended and tagwise dispersions.

    Parameters
    ----------
    counts : CountMatrix
        Filtered counts.
    design : SampleDesign
        Full-rank design aligned to ``counts.sample_ids``.
    norm : NormalizationResult
        Normalization factors and library sizes of ``counts``.
    config : DispersionConfig, optional
    glm_config : GLMConfig, optional
        IRLS settings for the mean fits inside the likelihood.
    n_jobs : int, default 1
        Workers for the gene-wise passes.

    Returns
    -------
    DispersionEstimate

    Examples
    --------
    >>> disp = estimate_dispersions(filtered, design, norm)
    >>> disp.common, disp.bcv
    """
    config = config or DispersionConfig()
    glm_config = glm_config or GLMConfig()
    X = design.aligned_to(counts.sample_ids).matrix
    G, S = counts.shape
    P = X.shape[1]
    offset = np.log(norm.effective_lib_sizes)
    alc = ave_log_cpm(counts.counts, norm.lib_sizes, norm.norm_factors,
                      prior_count=config.prior_count)
    records = []

    if S <= P:
        raise ValidationError(
            f"No residual degrees of freedom: {S} samples for {P} coefficients")

    # 1. APL grid and gene-wise maximizers
    t_grid, _ = dispersion_grid(config.grid_length, config.grid_range, config.grid_base)
    logger.info("Evaluating adjusted profile likelihood of %d genes on %d grid points",
                G, len(t_grid))
    profiles = gene_apply(
        gene_apl_profile, counts.counts,
        shared=dict(X=X, offset=offset, t_grid=t_grid, grid_base=config.grid_base,
                    xtol=config.xtol, max_iter=glm_config.max_iter, tol=glm_config.tol),
        n_jobs=n_jobs, on_error=partial(_failed_profile, n_grid=len(t_grid)))
    apl = np.vstack([p[0] for p in profiles])
    raw = np.array([p[1] for p in profiles])
    converged = np.array([p[2] for p in profiles], dtype=bool)
    for i in np.flatnonzero(~converged):
        records.append(GeneWarning(
            str(counts.gene_ids[i]), "dispersion", "convergence",
            "gene-wise dispersion search did not converge"))

    # 2. common
    common = common_dispersion(apl, t_grid, config.grid_base, config.xtol)
    if not np.isfinite(common) or common <= 0:
        warnings.warn(f"Common dispersion {common!r} clamped to {config.min_disp:g}",
                      NumericalWarning, stacklevel=2)
        common = config.min_disp
    logger.info("Common dispersion: %.4g (BCV %.4f)", common, np.sqrt(common))

    # 3. trend
    raw = _clamp(raw, counts.gene_ids, config.min_disp, "raw", records)
    trend, span = trended_dispersion(raw, alc, common, span=config.span,
                                     min_genes=config.min_trend_genes,
                                     iterations=config.lowess_iterations)
    trend = _clamp(trend, counts.gene_ids, config.min_disp, "trended", records)
    logger.info("Trended dispersion range: %.4g - %.4g", trend.min(), trend.max())

    # 4. prior df from mean fits at the trend
    fits = gene_apply(
        _deviance_fit, counts.counts, per_gene=(trend,),
        shared=dict(X=X, offset=offset, max_iter=glm_config.max_iter, tol=glm_config.tol),
        n_jobs=n_jobs, on_error=partial(failed_fit, n_coefs=P, n_samples=S))
    fitted = np.vstack([f.mu for f in fits])
    dev = np.array([f.deviance for f in fits])
    df_res = residual_df(counts.counts, fitted, X)
    with np.errstate(divide="ignore", invalid="ignore"):
        s2 = np.where(df_res > 0, dev / df_res, np.nan)
    _, prior_df = fit_f_dist(s2, df_res)
    if not np.isfinite(prior_df) and not np.isinf(prior_df):
        msg = (f"Prior degrees of freedom could not be estimated; using "
               f"{config.prior_df:g}")
        logger.warning(msg)
        warnings.warn(msg, NumericalWarning, stacklevel=2)
        prior_df = config.prior_df
    logger.info("Prior degrees of freedom: %.4g", prior_df)

    # 5. tagwise
    tagwise = tagwise_dispersion(raw, trend, df_res, prior_df)
    tagwise = _clamp(tagwise, counts.gene_ids, config.min_disp, "tagwise", records)

    if records:
        emit(records, "dispersion")

    for arr in (alc, trend, tagwise, raw, df_res, converged):
        arr.setflags(write=False)
    return DispersionEstimate(counts.gene_ids, alc, common, trend, tagwise, raw,
                              float(prior_df), df_res, span, converged, tuple(records))
