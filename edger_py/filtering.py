"""
Expression filtering of RNA-seq count matrices.

Genes on an exclusion list (for example mitochondrial or ribosomal genes)
are removed first. The remaining genes are kept only if enough samples
express them above a log2-CPM threshold, computed with library-size-only
normalization. Library sizes of the returned matrix are recomputed from
the retained genes, so downstream normalization only sees the
composition of genes considered expressed.

References:
    - Chen Y, Lun ATL, Smyth GK (2016). From reads to genes to pathways:
      differential expression analysis of RNA-Seq experiments using
      Rsubread and the edgeR quasi-likelihood pipeline. F1000Research 5:1438
"""

import logging

import numpy as np

from .errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


def filter_by_expr(counts, log_cpm_threshold=0.0, min_samples=2, prior_count=0.5):
    """
    Boolean mask of genes expressed in at least ``min_samples`` samples.

    Parameters
    ----------
    counts : CountMatrix
        Count matrix to assess.
    log_cpm_threshold : float, default 0.0
        Minimum log2-CPM for a sample to count as expressing a gene.
    min_samples : int, default 2
        Minimum number of expressing samples.
    prior_count : float, default 0.5
        Count added to each observation (and twice that to each library
        size) before taking logs.

    Returns
    -------
    np.ndarray
        Boolean mask, one entry per gene.

    Notes
    -----
    The prior count here is a fixed offset rather than the
    library-size-scaled prior of :func:`edger_py.utils.cpm`; log-CPM then
    only increases when library sizes shrink, which makes filtering
    idempotent.
    """
    if min_samples < 1:
        raise ConfigurationError("min_samples must be >= 1")
    if min_samples > counts.n_samples:
        raise ConfigurationError(
            f"min_samples ({min_samples}) exceeds the number of samples "
            f"({counts.n_samples})")

    lib = counts.lib_sizes
    with np.errstate(divide="ignore"):
        log_cpm = np.log2((counts.counts + prior_count) / (lib + 2.0 * prior_count) * 1e6)
    expressed = (log_cpm >= log_cpm_threshold).sum(axis=1)
    return expressed >= min_samples


def filter_counts(counts, exclude=(), log_cpm_threshold=0.0, min_samples=2,
                  prior_count=0.5):
    """
    Remove excluded and lowly expressed genes.

    Parameters
    ----------
    counts : CountMatrix
        Input counts.
    exclude : iterable of str
        Gene identifiers to drop unconditionally.
    log_cpm_threshold, min_samples, prior_count
        See :func:`filter_by_expr`.

    Returns
    -------
    CountMatrix
        Retained genes in their original order; library sizes are the
        column totals of the retained genes.

    Raises
    ------
    ConfigurationError
        If ``min_samples`` is < 1 or exceeds the number of samples.
    ValidationError
        If no gene survives filtering.

    Examples
    --------
    >>> filtered = filter_counts(cm, exclude={"MT-CO1"}, log_cpm_threshold=1.0,
    ...                          min_samples=3)
    """
    if min_samples < 1 or min_samples > counts.n_samples:
        raise ConfigurationError(
            f"min_samples must lie in [1, {counts.n_samples}], got {min_samples}")

    exclude = {str(g) for g in exclude}
    keep = ~np.isin(counts.gene_ids, list(exclude)) if exclude else np.ones(counts.n_genes, bool)
    n_excluded = int((~keep).sum())
    if not keep.any():
        raise ValidationError("Every gene is on the exclusion list")

    # library sizes for the CPM screen come from the non-excluded genes
    candidates = counts.subset_genes(keep)
    expressed = filter_by_expr(candidates, log_cpm_threshold=log_cpm_threshold,
                               min_samples=min_samples, prior_count=prior_count)
    if not expressed.any():
        raise ValidationError(
            f"No gene has log2-CPM >= {log_cpm_threshold} in at least "
            f"{min_samples} samples")

    filtered = candidates.subset_genes(expressed)
    logger.info(
        "Filtering: %d genes in, %d excluded, %d below expression threshold, %d kept",
        counts.n_genes, n_excluded, int((~expressed).sum()), filtered.n_genes)
    return filtered
