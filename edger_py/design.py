"""
Design matrices and contrasts for negative binomial GLMs.

The statistical core consumes a plain numeric design matrix wrapped in a
``SampleDesign``. This module also provides the thin helpers that build
one from sample metadata (treatment coding of an enumerated list of
categorical factors, via patsy) and that turn user-facing contrast
specifications into numeric contrast matrices.

References:
    - Wilkinson GN, Rogers CE (1973). Symbolic description of factorial
      models for analysis of variance. Applied Statistics 22:392-399
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression
      analysis of multifactor RNA-Seq experiments with respect to
      biological variation. Nucleic Acids Research 40:4288-4297
"""

import logging
import re
from dataclasses import dataclass

import numpy as np
import pandas as pd
from patsy import dmatrix

from .errors import ConfigurationError, ValidationError, preview

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SampleDesign:
    """
    Full-rank design matrix aligned to the count matrix columns.

    Attributes
    ----------
    matrix : np.ndarray
        Design matrix (samples x coefficients) after zero-column removal.
    columns : tuple of str
        Coefficient names for the columns of ``matrix``.
    sample_ids : np.ndarray
        Sample identifiers, one per row.
    dropped : tuple of str
        Names of all-zero columns removed from the supplied matrix.
    original_columns : tuple of str
        Column names of the supplied matrix, before removal.
    """

    matrix: np.ndarray
    columns: tuple
    sample_ids: np.ndarray
    dropped: tuple = ()
    original_columns: tuple = ()

    @classmethod
    def from_matrix(cls, matrix, columns=None, sample_ids=None):
        """
        Wrap a numeric design, dropping all-zero columns.

        Raises
        ------
        ValidationError
            If the matrix holds non-finite values, or is rank deficient
            once all-zero columns have been removed.
        """
        if isinstance(matrix, pd.DataFrame):
            if columns is None:
                columns = [str(c) for c in matrix.columns]
            if sample_ids is None:
                sample_ids = [str(i) for i in matrix.index]
            matrix = matrix.values

        X = np.asarray(matrix, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        S, P = X.shape
        if columns is None:
            columns = [f"coef{j}" for j in range(P)]
        columns = tuple(str(c) for c in columns)
        if len(columns) != P:
            raise ValidationError(f"Got {len(columns)} column names for {P} design columns")
        if len(set(columns)) != P:
            raise ValidationError("Design column names must be unique")
        if sample_ids is None:
            sample_ids = [f"sample_{i}" for i in range(S)]
        sample_ids = np.asarray(sample_ids).astype(str)
        if sample_ids.shape != (S,):
            raise ValidationError(f"Got {sample_ids.size} sample ids for {S} design rows")
        if not np.all(np.isfinite(X)):
            raise ValidationError("Design matrix contains non-finite values")

        X_kept, keep = drop_zero_columns(X)
        dropped = tuple(c for c, k in zip(columns, keep) if not k)
        kept = tuple(c for c, k in zip(columns, keep) if k)
        if dropped:
            logger.info("Dropping all-zero design columns: %s", ", ".join(dropped))
        if X_kept.shape[1] == 0:
            raise ValidationError("Design matrix has no non-zero columns")
        if not check_full_rank(X_kept):
            raise ValidationError(
                f"Design matrix is rank deficient after dropping zero columns "
                f"(rank {np.linalg.matrix_rank(X_kept)} < {X_kept.shape[1]} columns: "
                f"{preview(kept)})")

        X_kept.setflags(write=False)
        sample_ids.setflags(write=False)
        return cls(X_kept, kept, sample_ids, dropped, columns)

    @property
    def n_coefs(self):
        return self.matrix.shape[1]

    @property
    def n_samples(self):
        return self.matrix.shape[0]

    def aligned_to(self, sample_ids):
        """
        Return the design with rows ordered as ``sample_ids``.

        Raises ValidationError if the two sample sets differ.
        """
        sample_ids = np.asarray(sample_ids).astype(str)
        if np.array_equal(sample_ids, self.sample_ids):
            return self
        missing = sorted(set(sample_ids) - set(self.sample_ids))
        extra = sorted(set(self.sample_ids) - set(sample_ids))
        if missing or extra:
            raise ValidationError(
                "Design and count samples differ; "
                f"missing from design: [{preview(missing)}], "
                f"not in counts: [{preview(extra)}]")
        pos = {s: i for i, s in enumerate(self.sample_ids)}
        order = np.array([pos[s] for s in sample_ids])
        X = self.matrix[order]
        X.setflags(write=False)
        sample_ids.setflags(write=False)
        return SampleDesign(X, self.columns, sample_ids, self.dropped,
                            self.original_columns)

    def to_dataframe(self):
        return pd.DataFrame(self.matrix, index=self.sample_ids, columns=list(self.columns))


def align_metadata(metadata, sample_ids, required=()):
    """
    Check sample metadata against count columns and reorder it.

    Parameters
    ----------
    metadata : pd.DataFrame
        Sample metadata indexed by sample id.
    sample_ids : array-like
        Count matrix column identifiers.
    required : iterable of str
        Columns that must be present.

    Returns
    -------
    pd.DataFrame
        Metadata rows in the order of ``sample_ids``.
    """
    if not isinstance(metadata, pd.DataFrame):
        raise TypeError("metadata must be a pandas DataFrame")
    missing_cols = [c for c in required if c not in metadata.columns]
    if missing_cols:
        raise ValidationError(f"Metadata is missing required column(s): {missing_cols}")

    meta = metadata.copy()
    meta.index = meta.index.astype(str)
    sample_ids = [str(s) for s in sample_ids]
    missing = [s for s in sample_ids if s not in meta.index]
    extra = [s for s in meta.index if s not in set(sample_ids)]
    if missing or extra:
        raise ValidationError(
            "Metadata and count samples differ; "
            f"missing from metadata: [{preview(missing)}], "
            f"not in counts: [{preview(extra)}]")
    return meta.loc[sample_ids]


def model_matrix(metadata, factors, reference_levels=None, intercept=True):
    """
    Treatment-coded design matrix for an enumerated list of factors.

    Each factor is encoded as a categorical variable whose first level
    (sorted order, unless a reference level is given) is absorbed into
    the intercept.

    Parameters
    ----------
    metadata : pd.DataFrame
        Sample metadata indexed by sample id.
    factors : list of str
        Metadata columns to include, in order.
    reference_levels : dict, optional
        Mapping factor -> reference level.
    intercept : bool, default True
        Whether to include an intercept column.

    Returns
    -------
    SampleDesign

    Examples
    --------
    >>> meta = pd.DataFrame({'group': ['A', 'A', 'B', 'B']},
    ...                     index=['s1', 's2', 's3', 's4'])
    >>> design = model_matrix(meta, ['group'])
    >>> design.columns
    ('Intercept', 'group[T.B]')
    """
    if isinstance(factors, str):
        factors = [factors]
    if not factors and not intercept:
        raise ConfigurationError("A design needs at least one factor or an intercept")
    missing = [f for f in factors if f not in metadata.columns]
    if missing:
        raise ValidationError(f"Metadata is missing required column(s): {missing}")
    reference_levels = reference_levels or {}

    data = pd.DataFrame(index=metadata.index)
    terms = []
    for i, factor in enumerate(factors):
        values = metadata[factor].astype(str)
        levels = sorted(values.unique())
        ref = reference_levels.get(factor)
        if ref is not None:
            ref = str(ref)
            if ref not in levels:
                raise ConfigurationError(
                    f"Reference level {ref!r} not found in factor {factor!r} "
                    f"(levels: {levels})")
            levels = [ref] + [lv for lv in levels if lv != ref]
        # patsy needs identifier-safe column names; keep the factor name in labels
        key = f"f{i}"
        data[key] = pd.Categorical(values, categories=levels)
        terms.append(key)

    formula = " + ".join(terms) if terms else "1"
    if not intercept:
        formula = "0 + " + formula
    dm = dmatrix(formula, data=data, return_type="dataframe")

    columns = list(dm.columns)
    for i, factor in enumerate(factors):
        columns = [c.replace(f"f{i}[", f"{factor}[") for c in columns]
    return SampleDesign.from_matrix(dm.values, columns=columns,
                                    sample_ids=metadata.index.astype(str))


def check_full_rank(X):
    """
    Check whether a design matrix has full column rank.

    Examples
    --------
    >>> X = np.array([[1, 0], [1, 0], [1, 1], [1, 1]])
    >>> check_full_rank(X)
    True
    """
    X = np.asarray(X, dtype=float)
    return np.linalg.matrix_rank(X) == X.shape[1]


def drop_zero_columns(X):
    """Remove columns whose entries are all zero; return (X, keep_mask)."""
    X = np.asarray(X, dtype=float)
    keep = np.abs(X).sum(axis=0) > 0
    return X[:, keep].copy(), keep


_TERM = re.compile(r"\s*([+-])?\s*(?:(\d+(?:\.\d*)?|\.\d+)\s*\*\s*)?([^+\-*\s][^+\-*]*?)\s*(?=[+-]|$)")


def parse_contrast_expression(expr):
    """
    Parse a linear combination of coefficient names.

    Examples
    --------
    >>> parse_contrast_expression("groupB - groupA")
    {'groupB': 1.0, 'groupA': -1.0}
    >>> parse_contrast_expression("0.5*t1 + 0.5*t2 - ctrl")
    {'t1': 0.5, 't2': 0.5, 'ctrl': -1.0}
    """
    weights = {}
    pos = 0
    expr = expr.strip()
    if not expr:
        raise ConfigurationError("Empty contrast expression")
    while pos < len(expr):
        m = _TERM.match(expr, pos)
        if m is None or m.end() == pos:
            raise ConfigurationError(f"Cannot parse contrast expression {expr!r}")
        sign, coef, name = m.groups()
        w = float(coef) if coef else 1.0
        if sign == "-":
            w = -w
        weights[name.strip()] = weights.get(name.strip(), 0.0) + w
        pos = m.end()
    return weights


def make_contrast(design, contrast):
    """
    Convert a contrast specification into a numeric contrast matrix.

    Parameters
    ----------
    design : SampleDesign
        Design the contrast refers to.
    contrast : int, str, dict, array-like
        One of:
        - integer coefficient index (into ``design.columns``)
        - coefficient name, or an expression such as ``"B - A"``
        - mapping {coefficient name: weight}
        - numeric vector sized to the kept columns, or to the original
          columns before zero-column removal
        - 2D array (coefficients x contrasts) for a multi-df test

    Returns
    -------
    np.ndarray
        Contrast matrix of shape (n_coefs, n_contrasts).

    Raises
    ------
    ConfigurationError
        Wrong dimensionality, unknown coefficient names, an index out of
        range, or non-zero weight on a column dropped for being all zero.
    """
    P = design.n_coefs
    names = list(design.columns)

    if isinstance(contrast, (bool, np.bool_)):
        raise ConfigurationError("Contrast must not be a boolean")

    if isinstance(contrast, (int, np.integer)):
        if not 0 <= contrast < P:
            raise ConfigurationError(
                f"Coefficient index {contrast} out of range for {P} coefficients")
        vec = np.zeros((P, 1))
        vec[contrast, 0] = 1.0
        return vec

    if isinstance(contrast, str):
        if contrast in names or contrast in design.dropped:
            contrast = {contrast: 1.0}
        else:
            contrast = parse_contrast_expression(contrast)

    if isinstance(contrast, dict):
        vec = np.zeros((P, 1))
        for name, weight in contrast.items():
            if name in design.dropped:
                raise ConfigurationError(
                    f"Contrast refers to coefficient {name!r}, which was dropped "
                    f"as an all-zero design column")
            if name not in names:
                raise ConfigurationError(
                    f"Unknown coefficient {name!r} in contrast; design has {names}")
            vec[names.index(name), 0] += float(weight)
        return vec

    C = np.asarray(contrast, dtype=float)
    if C.ndim == 1:
        C = C.reshape(-1, 1)
    if C.ndim != 2:
        raise ConfigurationError("Contrast must be a vector or a 2D matrix")
    if not np.all(np.isfinite(C)):
        raise ConfigurationError("Contrast contains non-finite values")

    n_orig = len(design.original_columns)
    if C.shape[0] == P:
        return C
    if design.dropped and C.shape[0] == n_orig:
        keep = np.array([c not in design.dropped for c in design.original_columns])
        if np.any(C[~keep] != 0):
            bad = [c for c, k in zip(design.original_columns, keep) if not k]
            raise ConfigurationError(
                f"Contrast puts weight on dropped all-zero column(s): {bad}")
        return C[keep]
    raise ConfigurationError(
        f"Contrast has {C.shape[0]} rows but the design has {P} coefficients")
