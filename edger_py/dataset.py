"""
Count matrix container for RNA-seq differential expression analysis.

``CountMatrix`` holds a genes x samples table of non-negative integer
read counts together with the gene and sample identifiers. Instances are
immutable: the underlying arrays are flagged read-only and every
operation that changes the gene set returns a new instance, with library
sizes recomputed from the genes it retains.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .errors import ValidationError, preview

logger = logging.getLogger(__name__)


def _frozen(arr):
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """
    Immutable genes x samples count table.

    Parameters
    ----------
    counts : np.ndarray
        Count matrix (genes x samples), non-negative integers.
    gene_ids : array-like of str
        Unique gene identifiers, one per row (order significant).
    sample_ids : array-like of str
        Unique sample identifiers, one per column.

    Attributes
    ----------
    lib_sizes : np.ndarray
        Per-sample column totals of ``counts``. Always derived from the
        genes currently held, never carried over from a larger table.

    Notes
    -----
    Use :meth:`from_dataframe` or :meth:`from_array` to build an instance
    from raw input; they validate the values and drop all-zero rows. The
    constructor itself only checks shapes and identifier uniqueness.
    """

    counts: np.ndarray
    gene_ids: np.ndarray
    sample_ids: np.ndarray

    def __post_init__(self):
        counts = np.asarray(self.counts)
        if counts.ndim != 2:
            raise ValidationError("counts must be a 2D (genes x samples) matrix")
        gene_ids = np.asarray(self.gene_ids).astype(str)
        sample_ids = np.asarray(self.sample_ids).astype(str)
        if gene_ids.shape != (counts.shape[0],):
            raise ValidationError(
                f"Got {gene_ids.size} gene ids for {counts.shape[0]} count rows")
        if sample_ids.shape != (counts.shape[1],):
            raise ValidationError(
                f"Got {sample_ids.size} sample ids for {counts.shape[1]} count columns")
        _check_unique(gene_ids, "gene")
        _check_unique(sample_ids, "sample")

        object.__setattr__(self, "counts", _frozen(counts.astype(float)))
        object.__setattr__(self, "gene_ids", _frozen(gene_ids))
        object.__setattr__(self, "sample_ids", _frozen(sample_ids))
        object.__setattr__(self, "lib_sizes", _frozen(self.counts.sum(axis=0)))

    @classmethod
    def from_array(cls, counts, gene_ids=None, sample_ids=None, drop_zero=True):
        """Validate a raw count array and wrap it."""
        counts = np.asarray(counts)
        if counts.ndim != 2:
            raise ValidationError("counts must be a 2D (genes x samples) matrix")
        G, S = counts.shape
        if gene_ids is None:
            gene_ids = [f"gene_{i}" for i in range(G)]
        if sample_ids is None:
            sample_ids = [f"sample_{i}" for i in range(S)]
        gene_ids = np.asarray(gene_ids).astype(str)

        counts = validate_counts(counts, gene_ids)
        if drop_zero:
            nonzero = counts.sum(axis=1) > 0
            if not nonzero.all():
                logger.info("Dropping %d all-zero genes", int((~nonzero).sum()))
                counts = counts[nonzero]
                gene_ids = gene_ids[nonzero]
        return cls(counts, gene_ids, sample_ids)

    @classmethod
    def from_dataframe(cls, df, drop_zero=True):
        """
        Build a CountMatrix from a genes x samples DataFrame.

        Row index supplies gene ids and columns supply sample ids.
        """
        if not isinstance(df, pd.DataFrame):
            raise TypeError("df must be a pandas DataFrame")
        return cls.from_array(df.values, gene_ids=df.index.astype(str),
                              sample_ids=df.columns.astype(str),
                              drop_zero=drop_zero)

    @property
    def shape(self):
        return self.counts.shape

    @property
    def n_genes(self):
        return self.counts.shape[0]

    @property
    def n_samples(self):
        return self.counts.shape[1]

    def subset_genes(self, mask):
        """Return a new CountMatrix holding only the selected rows."""
        mask = np.asarray(mask)
        return CountMatrix(self.counts[mask], self.gene_ids[mask], self.sample_ids)

    def to_dataframe(self):
        return pd.DataFrame(self.counts, index=pd.Index(self.gene_ids, name="gene_id"),
                            columns=self.sample_ids)

    def __repr__(self):
        G, S = self.shape
        return f"CountMatrix with {G} genes and {S} samples"


def _check_unique(ids, kind):
    uniq, n = np.unique(ids, return_counts=True)
    dup = uniq[n > 1]
    if dup.size:
        raise ValidationError(f"Duplicate {kind} identifiers: {preview(dup)}")


def validate_counts(counts, gene_ids):
    """
    Check that counts are finite, non-negative integers.

    Returns the counts as a float array (integral values).
    """
    try:
        values = np.asarray(counts, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"counts must be numeric: {exc}") from exc

    bad_rows = ~np.isfinite(values).all(axis=1)
    if bad_rows.any():
        raise ValidationError(
            f"Non-finite counts for genes: {preview(gene_ids[bad_rows])}")

    negative = (values < 0).any(axis=1)
    if negative.any():
        raise ValidationError(
            f"Negative counts for genes: {preview(gene_ids[negative])}")

    fractional = (values != np.round(values)).any(axis=1)
    if fractional.any():
        raise ValidationError(
            f"Non-integer counts for genes: {preview(gene_ids[fractional])}")

    return values
