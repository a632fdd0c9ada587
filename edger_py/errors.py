"""
Error and warning types for edgeR-like differential expression analysis.

Fatal problems (malformed input, impossible configuration) are raised as
exceptions and abort the run. Problems that only affect individual genes
(an IRLS fit that ran out of iterations, a dispersion that had to be
clamped) never abort a batch: they are recorded as ``GeneWarning`` rows,
carried along with every stage result and reported next to the final
table.
"""

import logging
import warnings
from dataclasses import dataclass

import pandas as pd

logger = logging.getLogger(__name__)


class EdgePyError(Exception):
    """Base class for all fatal edger_py errors."""


class ValidationError(EdgePyError, ValueError):
    """Malformed input data (counts, design, metadata)."""


class ConfigurationError(EdgePyError, ValueError):
    """Invalid analysis parameters or contrast specification."""


class ConvergenceWarning(UserWarning):
    """An iterative per-gene fit did not reach its tolerance."""


class NumericalWarning(RuntimeWarning):
    """A per-gene estimate was out of range and had to be clamped."""


CATEGORIES = {
    "convergence": ConvergenceWarning,
    "numerical": NumericalWarning,
}


@dataclass(frozen=True)
class GeneWarning:
    """One non-fatal, per-gene (or per-sample) problem."""

    gene_id: str
    stage: str
    category: str
    message: str


def preview(ids, n=5):
    """Format the first few identifiers for an error message."""
    ids = [str(i) for i in ids]
    head = ", ".join(ids[:n])
    if len(ids) > n:
        head += f", ... ({len(ids)} total)"
    return head


def emit(records, stage):
    """
    Surface a batch of gene warnings through ``warnings`` and the logger.

    One Python warning is issued per category and stage, naming how many
    genes are affected, so a large batch does not flood the console.
    """
    by_category = {}
    for rec in records:
        by_category.setdefault(rec.category, []).append(rec.gene_id)

    for category, ids in by_category.items():
        msg = f"{stage}: {len(ids)} gene(s) flagged ({category}): {preview(ids)}"
        logger.warning(msg)
        warnings.warn(msg, CATEGORIES.get(category, UserWarning), stacklevel=3)


def warnings_frame(*record_groups):
    """
    Concatenate gene warnings from several stages into one table.

    Parameters
    ----------
    *record_groups : iterable of GeneWarning
        Warning records, typically ``stage_result.warnings`` of each stage.

    Returns
    -------
    pd.DataFrame
        Columns ``gene_id``, ``stage``, ``category``, ``message`` in the
        order the records were produced.
    """
    rows = [
        (r.gene_id, r.stage, r.category, r.message)
        for group in record_groups
        for r in group
    ]
    return pd.DataFrame(rows, columns=["gene_id", "stage", "category", "message"])
