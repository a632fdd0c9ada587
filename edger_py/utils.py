"""
Utility functions for edgeR-like analysis.

This module provides helper functions for library-size normalization
(counts per million, log-CPM, average log-CPM) and for residual degrees
of freedom of count GLMs.

References:
    - Robinson MD, McCarthy DJ, Smyth GK (2010). edgeR: a Bioconductor
      package for differential expression analysis of digital gene
      expression data. Bioinformatics 26:139-140
    - Law CW, Chen Y, Shi W, Smyth GK (2014). voom: precision weights
      unlock linear model analysis tools for RNA-seq read counts.
      Genome Biology 15:R29
"""

import numpy as np
import pandas as pd


def effective_lib_sizes(lib_sizes, norm_factors=None):
    """
    Library sizes scaled by normalization factors.

    Parameters
    ----------
    lib_sizes : np.ndarray
        Per-sample column totals.
    norm_factors : np.ndarray, optional
        Per-sample normalization factors. If None, all ones.

    Returns
    -------
    np.ndarray
        ``lib_sizes * norm_factors``.
    """
    lib_sizes = np.asarray(lib_sizes, dtype=float)
    if norm_factors is None:
        return lib_sizes.copy()
    return lib_sizes * np.asarray(norm_factors, dtype=float)


def cpm(counts, lib_sizes=None, norm_factors=None, log=False, prior_count=2.0):
    """
    Counts per million.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    lib_sizes : np.ndarray, optional
        Library sizes. If None, column totals of ``counts``.
    norm_factors : np.ndarray, optional
        Normalization factors applied to the library sizes.
    log : bool, default False
        Return log2-CPM.
    prior_count : float, default 2.0
        Average count added to each observation before taking logs. The
        count added to sample i is scaled by its library size relative
        to the mean library size, and twice that amount is added to the
        library size, so that low counts are shrunk towards each other.

    Returns
    -------
    np.ndarray or pd.DataFrame
        CPM values with the same shape as the input.

    Examples
    --------
    >>> counts = np.array([[10, 20], [90, 180]])
    >>> cpm(counts)
    array([[100000., 100000.],
           [900000., 900000.]])
    """
    is_df = isinstance(counts, pd.DataFrame)
    if is_df:
        index, columns = counts.index, counts.columns
        counts = counts.values

    counts = np.asarray(counts, dtype=float)
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    lib = effective_lib_sizes(lib_sizes, norm_factors)

    if log:
        prior = prior_count * lib / lib.mean()
        values = np.log2((counts + prior) / (lib + 2.0 * prior) * 1e6)
    else:
        values = counts / lib * 1e6

    if is_df:
        return pd.DataFrame(values, index=index, columns=columns)
    return values


def ave_log_cpm(counts, lib_sizes=None, norm_factors=None, prior_count=2.0):
    """
    Average log2-CPM of each gene across samples.

    The average is taken on the CPM scale (after adding the scaled prior
    count of :func:`cpm`) and then logged, which keeps genes with zeros
    in some samples finite and ordered by abundance.

    Returns
    -------
    np.ndarray
        One value per gene.
    """
    counts = np.asarray(counts, dtype=float)
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    lib = effective_lib_sizes(lib_sizes, norm_factors)
    prior = prior_count * lib / lib.mean()
    scaled = (counts + prior) / (lib + 2.0 * prior)
    return np.log2(scaled.mean(axis=1) * 1e6)


def residual_df(counts, fitted, design, zero_tol=1e-4):
    """
    Residual degrees of freedom per gene, adjusted for exact zeros.

    An observation that is zero and fitted as (numerically) zero carries
    no information about the dispersion. Such observations are removed
    from the gene's df together with the rank of the design rows they
    leave behind.

    Parameters
    ----------
    counts, fitted : np.ndarray
        Observed and fitted counts (genes x samples).
    design : np.ndarray
        Design matrix (samples x coefficients).

    Returns
    -------
    np.ndarray
        Residual df per gene (float, >= 0).
    """
    counts = np.asarray(counts, dtype=float)
    fitted = np.asarray(fitted, dtype=float)
    design = np.asarray(design, dtype=float)
    G, S = counts.shape
    P = design.shape[1]

    zero = (counts < zero_tol) & (fitted < zero_tol)
    nzero = zero.sum(axis=1)
    df = np.full(G, float(S - P))
    df[nzero == S] = 0.0

    rank_cache = {}
    for g in np.flatnonzero((nzero > 0) & (nzero < S)):
        key = zero[g].tobytes()
        if key not in rank_cache:
            rank_cache[key] = np.linalg.matrix_rank(design[~zero[g]])
        df[g] = max(S - nzero[g] - rank_cache[key], 0)
    return df
