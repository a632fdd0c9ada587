"""
Likelihood ratio tests for contrasts of GLM coefficients.

The null hypothesis ``C' beta = 0`` is imposed by reparametrizing the
design so that the contrast spans its leading coefficients and dropping
those columns; every gene is then refitted under the reduced design at
the same dispersion. The statistic is the deviance difference between
the reduced and the full fit, which equals twice the log-likelihood
difference at fixed dispersion, referred to a chi-square distribution
with as many degrees of freedom as the rank of the contrast.

References:
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression
      analysis of multifactor RNA-Seq experiments with respect to
      biological variation. Nucleic Acids Research 40:4288-4297
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import chi2

from .config import GLMConfig
from .design import make_contrast
from .errors import GeneWarning, emit
from .glm import fit_design
from .utils import ave_log_cpm

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ContrastResult:
    """
    Per-gene likelihood ratio test of one contrast.

    Attributes
    ----------
    gene_ids : np.ndarray
    contrast : np.ndarray
        Contrast matrix (coefficients x contrasts).
    log_fc : np.ndarray
        log2 fold changes, genes x contrasts.
    log_cpm : np.ndarray
        Average log2-CPM of each gene.
    lr : np.ndarray
        Likelihood ratio statistics.
    pvalue : np.ndarray
    df : int
        Degrees of freedom of the test (rank of the contrast).
    warnings : tuple of GeneWarning
    """

    gene_ids: np.ndarray
    contrast: np.ndarray
    log_fc: np.ndarray
    log_cpm: np.ndarray
    lr: np.ndarray
    pvalue: np.ndarray
    df: int
    warnings: tuple = ()

    def to_frame(self):
        """Columns ``logFC`` (or ``logFC.1``, ``logFC.2``...), ``logCPM``, ``LR``, ``PValue``."""
        m = self.log_fc.shape[1]
        if m == 1:
            data = {"logFC": self.log_fc[:, 0]}
        else:
            data = {f"logFC.{j + 1}": self.log_fc[:, j] for j in range(m)}
        data.update(logCPM=self.log_cpm, LR=self.lr, PValue=self.pvalue)
        return pd.DataFrame(data, index=pd.Index(self.gene_ids, name="gene_id"))


def null_design(X, contrast):
    """
    Design matrix of the null model ``C' beta = 0``.

    Rotates ``X`` by the full Q factor of the QR decomposition of ``C``
    and drops the first ``rank(C)`` columns, which are the directions
    the contrast constrains.

    Returns
    -------
    X0 : np.ndarray
        Reduced design (samples x (P - rank)).
    rank : int
    """
    X = np.asarray(X, dtype=float)
    C = np.asarray(contrast, dtype=float)
    rank = int(np.linalg.matrix_rank(C)) if np.any(C != 0) else 0
    Q, _ = np.linalg.qr(C, mode="complete")
    return (X @ Q)[:, rank:], rank


def glm_lrt(fit, contrast, config=None, prior_count=2.0, n_jobs=1):
    """
    Likelihood ratio test of a contrast for every gene.

    Parameters
    ----------
    fit : GLMFitResult
        Full-model fits.
    contrast : int, str, dict or array-like
        Coefficient index, coefficient name, expression such as
        ``"groupB - groupA"``, mapping of weights, vector, or
        coefficients x contrasts matrix. See
        :func:`edger_py.design.make_contrast`.
    config : GLMConfig, optional
        IRLS settings for the null fits.
    prior_count : float, default 2.0
        Prior count of the average log-CPM column.
    n_jobs : int, default 1

    Returns
    -------
    ContrastResult

    Notes
    -----
    A contrast of rank zero (all weights zero) constrains nothing: the
    statistic is 0 and the p-value 1 for every gene, without refitting.
    Genes whose full or null fit failed get a NaN statistic and a
    p-value of 1, and are listed as warnings.
    """
    config = config or GLMConfig()
    C = np.array(make_contrast(fit.design, contrast), dtype=float)
    G = fit.gene_ids.size
    log_fc = (np.asarray(fit.coefficients) @ C) / np.log(2.0)
    log_cpm = ave_log_cpm(fit.counts, fit.lib_sizes, fit.norm_factors,
                          prior_count=prior_count)
    records = []

    X0, df = null_design(fit.design.matrix, C)
    if df == 0:
        logger.info("Contrast has rank 0; LR statistics are all zero")
        lr = np.zeros(G)
        pvalue = np.ones(G)
    else:
        logger.info("Likelihood ratio test on %d df (%d null coefficients)",
                    df, X0.shape[1])
        null_fits = fit_design(fit.counts, X0, fit.offset, fit.dispersion,
                               max_iter=config.max_iter, tol=config.tol, n_jobs=n_jobs)
        dev0 = np.array([f.deviance for f in null_fits])
        null_converged = np.array([f.converged for f in null_fits], dtype=bool)

        lr = np.maximum(dev0 - fit.deviance, 0.0)
        failed = ~np.isfinite(lr)
        pvalue = np.where(failed, 1.0, chi2.sf(np.where(failed, 0.0, lr), df))

        for i in np.flatnonzero(~null_converged & ~failed):
            records.append(GeneWarning(str(fit.gene_ids[i]), "lrt", "convergence",
                                       "null model fit did not converge"))
        for i in np.flatnonzero(failed):
            records.append(GeneWarning(str(fit.gene_ids[i]), "lrt", "numerical",
                                       "likelihood ratio could not be computed; p-value set to 1"))

    if records:
        emit(records, "lrt")

    C.setflags(write=False)
    for arr in (log_fc, log_cpm, lr, pvalue):
        arr.setflags(write=False)
    return ContrastResult(fit.gene_ids, C, log_fc, log_cpm, lr, pvalue, df, tuple(records))
