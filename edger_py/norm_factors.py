"""
Normalization factors for RNA-seq libraries.

TMM (trimmed mean of M-values) is the default: each sample is compared
with a reference sample on the genes expressed in both, the most extreme
log-ratios and abundances are trimmed, and the precision-weighted mean
of the remaining log-ratios gives the sample's scaling factor. RLE
(median of ratios to the gene-wise geometric mean) and upper-quartile
scaling are available as alternatives. Factors are always rescaled to a
geometric mean of one.

References:
    - Robinson MD, Oshlack A (2010). A scaling normalization method for
      differential expression analysis of RNA-seq data. Genome Biology 11:R25
    - Anders S, Huber W (2010). Differential expression analysis for
      sequence count data. Genome Biology 11:R106
    - Bullard JH et al. (2010). Evaluation of statistical methods for
      normalization and differential expression in mRNA-Seq experiments.
      BMC Bioinformatics 11:94
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.stats import rankdata

from .errors import ConfigurationError, GeneWarning, ValidationError, emit

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class NormalizationResult:
    """
    Per-sample normalization factors.

    Attributes
    ----------
    sample_ids : np.ndarray
    lib_sizes : np.ndarray
        Library sizes the factors were computed against.
    norm_factors : np.ndarray
        Positive factors with geometric mean 1.
    method : str
    reference : str or None
        Reference sample used by TMM.
    fallback : np.ndarray
        True for samples that fell back to library-size-only scaling.
    warnings : tuple of GeneWarning
    """

    sample_ids: np.ndarray
    lib_sizes: np.ndarray
    norm_factors: np.ndarray
    method: str
    reference: str = None
    fallback: np.ndarray = None
    warnings: tuple = ()

    @property
    def effective_lib_sizes(self):
        return self.lib_sizes * self.norm_factors


def upper_quartile_factors(counts, lib_sizes, p=0.75):
    """Per-sample ``p`` quantile of count / library size."""
    counts = np.asarray(counts, dtype=float)
    return np.quantile(counts / lib_sizes, p, axis=0)


def select_reference(counts, lib_sizes):
    """
    Index of the TMM reference sample.

    The reference is the sample whose upper quartile of count/library
    size lies closest to the mean upper quartile across samples. When
    the data are so sparse that the median upper quartile is zero, the
    sample with the largest sum of square-root counts is used instead.
    """
    f75 = upper_quartile_factors(counts, lib_sizes)
    if np.median(f75) < 1e-20:
        return int(np.argmax(np.sqrt(counts).sum(axis=0)))
    return int(np.argmin(np.abs(f75 - f75.mean())))


def tmm_factor(obs, ref, lib_obs, lib_ref, logratio_trim=0.3, sum_trim=0.05,
               do_weighting=True, a_cutoff=-1e10, min_genes=10):
    """
    TMM scaling factor of one sample relative to the reference.

    Parameters
    ----------
    obs, ref : np.ndarray
        Counts of the sample and of the reference, one entry per gene.
    lib_obs, lib_ref : float
        Library sizes of the two samples.
    logratio_trim : float, default 0.3
        Fraction trimmed from each tail of the log-ratios (M).
    sum_trim : float, default 0.05
        Fraction trimmed from each tail of the log-abundances (A).
    do_weighting : bool, default True
        Weight M-values by the inverse of their approximate variance.
    a_cutoff : float
        Genes with A below this are ignored.
    min_genes : int, default 10
        Minimum number of genes that must survive trimming.

    Returns
    -------
    factor : float
        Unnormalized factor ``2 ** weighted_mean(M)``.
    fallback : bool
        True if too few genes survived and the factor was set to 1.
    """
    obs = np.asarray(obs, dtype=float)
    ref = np.asarray(ref, dtype=float)
    if np.array_equal(obs, ref):
        return 1.0, False

    with np.errstate(divide="ignore", invalid="ignore"):
        p_obs = obs / lib_obs
        p_ref = ref / lib_ref
        log_r = np.log2(p_obs / p_ref)
        abs_e = 0.5 * (np.log2(p_obs) + np.log2(p_ref))
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size and np.max(np.abs(log_r)) < 1e-6:
        return 1.0, False

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s
    rank_r = rankdata(log_r) if n else log_r
    rank_e = rankdata(abs_e) if n else abs_e
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if keep.sum() < min_genes:
        return 1.0, True

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f), False


def rle_factors(counts, lib_sizes, loc_func=np.median):
    """
    Relative log expression factors.

    Median ratio of each sample to the gene-wise geometric mean, using
    only genes with no zero count, expressed relative to library size.
    """
    counts = np.asarray(counts, dtype=float)
    with np.errstate(divide="ignore"):
        log_geomeans = np.mean(np.log(counts), axis=1)
    usable = np.isfinite(log_geomeans)
    if not usable.any():
        raise ConfigurationError(
            "every gene contains at least one zero; cannot compute RLE factors")

    S = counts.shape[1]
    size_factors = np.zeros(S)
    for j in range(S):
        c = counts[usable, j]
        size_factors[j] = np.exp(loc_func(np.log(c) - log_geomeans[usable]))
    return size_factors / lib_sizes


def calc_norm_factors(counts, method="TMM", reference_sample=None, logratio_trim=0.3,
                      sum_trim=0.05, do_weighting=True, a_cutoff=-1e10, min_genes=10):
    """
    Compute per-sample normalization factors.

    Parameters
    ----------
    counts : CountMatrix
        Filtered counts; their column totals are the library sizes.
    method : {"TMM", "RLE", "upperquartile", "none"}
    reference_sample : str, optional
        Sample id to use as the TMM reference instead of the automatic
        upper-quartile rule.
    logratio_trim, sum_trim, do_weighting, a_cutoff, min_genes
        TMM parameters, see :func:`tmm_factor`.

    Returns
    -------
    NormalizationResult
        Factors with ``sum(log(norm_factors)) == 0``.

    Examples
    --------
    >>> norm = calc_norm_factors(filtered)
    >>> norm.effective_lib_sizes
    """
    x = counts.counts
    lib = np.asarray(counts.lib_sizes, dtype=float)
    S = counts.n_samples
    sample_ids = counts.sample_ids
    fallback = np.zeros(S, dtype=bool)
    reference = None
    records = []

    if np.any(lib <= 0):
        raise ValidationError(
            f"Samples with zero library size: {list(sample_ids[lib <= 0])}")

    if method == "TMM":
        if reference_sample is not None:
            hits = np.flatnonzero(sample_ids == str(reference_sample))
            if hits.size == 0:
                raise ConfigurationError(f"Unknown reference sample {reference_sample!r}")
            ref_idx = int(hits[0])
        else:
            ref_idx = select_reference(x, lib)
        reference = str(sample_ids[ref_idx])
        logger.info("TMM reference sample: %s", reference)

        factors = np.ones(S)
        for j in range(S):
            factors[j], fallback[j] = tmm_factor(
                x[:, j], x[:, ref_idx], lib[j], lib[ref_idx],
                logratio_trim=logratio_trim, sum_trim=sum_trim,
                do_weighting=do_weighting, a_cutoff=a_cutoff, min_genes=min_genes)
            if fallback[j]:
                records.append(GeneWarning(
                    str(sample_ids[j]), "normalization", "numerical",
                    f"fewer than {min_genes} genes left after TMM trimming against "
                    f"{reference}; using library-size scaling"))
    elif method == "RLE":
        factors = rle_factors(x, lib)
    elif method == "upperquartile":
        factors = upper_quartile_factors(x, lib)
        if np.any(factors <= 0):
            raise ConfigurationError(
                "Upper quartile is zero for some samples; use TMM or RLE instead")
    elif method == "none":
        factors = np.ones(S)
    else:
        raise ConfigurationError(f"Unknown normalization method: {method!r}")

    factors = factors / np.exp(np.mean(np.log(factors)))

    if records:
        emit(records, "normalization")
    logger.info("Normalization factors (%s): %s", method,
                ", ".join(f"{s}={f:.4f}" for s, f in zip(sample_ids, factors)))

    lib = lib.copy()
    for arr in (lib, factors, fallback):
        arr.setflags(write=False)
    return NormalizationResult(sample_ids, lib, factors, method, reference,
                               fallback, tuple(records))
