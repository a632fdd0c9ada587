"""
Multiple testing correction and gene ranking.

References:
    - Benjamini Y, Hochberg Y (1995). Controlling the false discovery
      rate: a practical and powerful approach to multiple testing.
      JRSS B 57:289-300
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .errors import warnings_frame

logger = logging.getLogger(__name__)


def benjamini_hochberg(pvals):
    """
    Benjamini-Hochberg FDR correction.

    Parameters
    ----------
    pvals : array-like
        Raw p-values in [0, 1]. NaN entries stay NaN and are not counted
        among the tests.

    Returns
    -------
    padj : np.ndarray
        Adjusted p-values in the input order; each is >= its raw p-value.

    Examples
    --------
    >>> benjamini_hochberg([0.01, 0.04, 0.03])
    array([0.03, 0.04, 0.04])
    """
    pvals = np.asarray(pvals, dtype=float)
    padj = np.full(pvals.shape, np.nan)
    ok = np.isfinite(pvals)
    p = pvals[ok]
    m = p.size
    if m == 0:
        return padj

    order = np.argsort(p, kind="mergesort")
    ranked_p = p[order]

    adj = ranked_p * m / np.arange(1, m + 1)
    # enforce monotone non-decreasing when going backwards
    adj_rev = np.minimum.accumulate(adj[::-1])[::-1]

    out = np.empty(m)
    out[order] = np.clip(adj_rev, 0, 1)
    padj[ok] = out
    return padj


@dataclass(frozen=True, eq=False)
class RankedResult:
    """
    Test results with FDR, sorted by p-value.

    Attributes
    ----------
    table : pd.DataFrame
        Indexed by ``gene_id``; columns ``logFC`` (one per contrast),
        ``logCPM``, ``LR``, ``PValue``, ``FDR``. Rows are sorted by
        ``PValue`` ascending, ties broken by gene id.
    df : int
        Degrees of freedom of the test.
    warnings : pd.DataFrame
        Per-gene warnings gathered from every stage, see
        :func:`edger_py.errors.warnings_frame`.
    """

    table: pd.DataFrame
    df: int
    warnings: pd.DataFrame

    def __len__(self):
        return len(self.table)

    @property
    def gene_ids(self):
        return self.table.index.to_numpy()

    def significant(self, fdr=0.05):
        """Rows with ``FDR <= fdr``, still in rank order."""
        return self.table[self.table["FDR"] <= fdr]

    def flagged(self):
        """Rows of genes that have at least one warning."""
        return self.table[self.table.index.isin(self.warnings["gene_id"])]


def rank_genes(result, warning_groups=(), fdr=0.05):
    """
    Add BH-adjusted p-values to a contrast result and rank the genes.

    Parameters
    ----------
    result : ContrastResult
    warning_groups : sequence of tuple of GeneWarning
        Warnings of earlier stages to report with the table; the
        contrast result's own warnings are always included.
    fdr : float, default 0.05
        Threshold used only for the logged count of significant genes.

    Returns
    -------
    RankedResult
    """
    table = result.to_frame()
    table["FDR"] = benjamini_hochberg(table["PValue"].to_numpy())

    order = np.lexsort((table.index.to_numpy().astype(str), table["PValue"].to_numpy()))
    table = table.iloc[order]

    warn = warnings_frame(*warning_groups, result.warnings)
    logger.info("Ranked %d genes; %d with FDR <= %g", len(table),
                int((table["FDR"] <= fdr).sum()), fdr)
    return RankedResult(table, result.df, warn)
