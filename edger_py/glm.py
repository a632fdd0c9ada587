"""
Gene-wise negative binomial GLM fitting.

Each gene is fitted independently by the statsmodels GLM (negative binomial
family, IRLS) with its own dispersion and the log effective library sizes as offset.
Genes are distributed over workers by :func:`edger_py.parallel.gene_apply`;
a gene that fails to converge keeps its last iterate and is reported as a
convergence warning instead of stopping the batch.

References:
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression
      analysis of multifactor RNA-Seq experiments with respect to
      biological variation. Nucleic Acids Research 40:4288-4297
"""

import logging
import warnings
from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning as SMConvergenceWarning

from .config import GLMConfig
from .errors import GeneWarning, ValidationError, emit
from .nbinom import POISSON_DISP, GeneFit, failed_fit, nb_deviance
from .parallel import gene_apply
from .utils import cpm, residual_df

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class GLMFitResult:
    """
    Gene-wise NB GLM fits against one design.

    Attributes
    ----------
    gene_ids, sample_ids : np.ndarray
    coefficients : np.ndarray
        Natural-log scale coefficients (genes x coefficients).
    fitted : np.ndarray
        Fitted means (genes x samples).
    deviance : np.ndarray
    converged : np.ndarray
    iterations : np.ndarray
    design : SampleDesign
    dispersion : np.ndarray
        Dispersions the fits were made at.
    counts : np.ndarray
        Counts the model was fitted to.
    lib_sizes, norm_factors : np.ndarray
    df_residual : np.ndarray
        Zero-adjusted residual df.
    warnings : tuple of GeneWarning
    """

    gene_ids: np.ndarray
    sample_ids: np.ndarray
    coefficients: np.ndarray
    fitted: np.ndarray
    deviance: np.ndarray
    converged: np.ndarray
    iterations: np.ndarray
    design: object
    dispersion: np.ndarray
    counts: np.ndarray
    lib_sizes: np.ndarray
    norm_factors: np.ndarray
    df_residual: np.ndarray
    warnings: tuple = ()

    @property
    def offset(self):
        return np.log(self.lib_sizes * self.norm_factors)

    def fitted_log_cpm(self, prior_count=2.0):
        """log2-CPM of the fitted values, genes x samples."""
        return cpm(self.fitted, self.lib_sizes, self.norm_factors, log=True,
                   prior_count=prior_count)

    def to_frame(self):
        """Coefficients plus fit diagnostics, one row per gene."""
        df = pd.DataFrame(self.coefficients, columns=list(self.design.columns),
                          index=pd.Index(self.gene_ids, name="gene_id"))
        df["deviance"] = self.deviance
        df["dispersion"] = self.dispersion
        df["converged"] = self.converged
        return df


def _dispersion_vector(dispersion, n_genes):
    tagwise = getattr(dispersion, "tagwise", None)
    if tagwise is not None:
        dispersion = tagwise
    disp = np.array(dispersion, dtype=float)
    if disp.ndim == 0:
        disp = np.full(n_genes, float(disp))
    if disp.shape != (n_genes,):
        raise ValidationError(
            f"Got {disp.size} dispersions for {n_genes} genes")
    if np.any(~np.isfinite(disp) | (disp < 0)):
        raise ValidationError("Dispersions must be finite and non-negative")
    return disp


def fit_gene_glm(y, dispersion, X, offset, max_iter=50, tol=1e-8):
    """
    Fit one gene with statsmodels' IRLS.

    The deviance is recomputed with :func:`edger_py.nbinom.nb_deviance`,
    which stays accurate for dispersions close to zero.
    """
    if X.shape[1] == 0:
        mu = np.exp(offset)
        return GeneFit(np.zeros(0), mu, nb_deviance(y, mu, dispersion), True, 0)

    if dispersion < POISSON_DISP:
        fam = sm.families.Poisson()
    else:
        fam = sm.families.NegativeBinomial(alpha=dispersion)
    with warnings.catch_warnings():
        # non-convergence is reported per gene by the caller
        warnings.simplefilter("ignore", SMConvergenceWarning)
        # relative deviance change, so near-Poisson fits with large deviances converge
        res = sm.GLM(y, X, family=fam, offset=offset).fit(
            maxiter=max_iter, tol=tol, atol=0.0, rtol=tol)

    mu = np.asarray(res.mu, dtype=float)
    return GeneFit(np.asarray(res.params, dtype=float), mu, nb_deviance(y, mu, dispersion),
                   bool(res.converged), int(res.fit_history["iteration"]))


def fit_design(counts, X, offset, dispersion, max_iter=50, tol=1e-8, n_jobs=1):
    """
    Fit every row of ``counts`` against the design matrix ``X``.

    Parameters
    ----------
    counts : np.ndarray
        Genes x samples.
    X : np.ndarray
        Samples x coefficients; may have zero columns, in which case the
        means are the offsets alone.
    offset : np.ndarray
        Log effective library sizes.
    dispersion : np.ndarray
        One dispersion per gene.

    Returns
    -------
    list of GeneFit
        In gene order.
    """
    X = np.asarray(X, dtype=float)
    return gene_apply(
        fit_gene_glm, counts, per_gene=(dispersion,),
        shared=dict(X=X, offset=offset, max_iter=max_iter, tol=tol),
        n_jobs=n_jobs,
        on_error=partial(failed_fit, n_coefs=X.shape[1], n_samples=counts.shape[1]))


def fit_glm(counts, design, dispersion, norm, config=None, n_jobs=1):
    """
    Fit a negative binomial GLM to every gene.

    Parameters
    ----------
    counts : CountMatrix
        Filtered counts.
    design : SampleDesign
        Full-rank design; reordered to ``counts.sample_ids`` if needed.
    dispersion : DispersionEstimate, np.ndarray or float
        Tagwise dispersions are used when an estimate is given.
    norm : NormalizationResult
    config : GLMConfig, optional
    n_jobs : int, default 1

    Returns
    -------
    GLMFitResult

    Examples
    --------
    >>> fit = fit_glm(filtered, design, disp, norm)
    >>> fit.to_frame().head()
    """
    config = config or GLMConfig()
    design = design.aligned_to(counts.sample_ids)
    disp = _dispersion_vector(dispersion, counts.n_genes)
    offset = np.log(norm.effective_lib_sizes)

    logger.info("Fitting NB GLM: %d genes, %d coefficients (%s)",
                counts.n_genes, design.n_coefs, ", ".join(design.columns))
    fits = fit_design(counts.counts, design.matrix, offset, disp,
                      max_iter=config.max_iter, tol=config.tol, n_jobs=n_jobs)

    coef = np.vstack([f.beta for f in fits])
    fitted = np.vstack([f.mu for f in fits])
    dev = np.array([f.deviance for f in fits])
    converged = np.array([f.converged for f in fits], dtype=bool)
    iterations = np.array([f.iterations for f in fits], dtype=int)
    df_res = residual_df(counts.counts, fitted, design.matrix)

    records = [
        GeneWarning(str(counts.gene_ids[i]), "glm", "convergence",
                    f"IRLS stopped after {iterations[i]} iterations without "
                    f"reaching tolerance {config.tol:g}")
        for i in np.flatnonzero(~converged)
    ]
    if records:
        emit(records, "glm")
    logger.info("GLM fits converged for %d of %d genes",
                int(converged.sum()), counts.n_genes)

    for arr in (coef, fitted, dev, converged, iterations, disp, df_res):
        arr.setflags(write=False)
    return GLMFitResult(counts.gene_ids, counts.sample_ids, coef, fitted, dev, converged,
                        iterations, design, disp, counts.counts, norm.lib_sizes,
                        norm.norm_factors, df_res, tuple(records))
