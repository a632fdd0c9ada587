"""
Result tables for edgeR-like analysis.

Helpers that work on a :class:`~edger_py.multiple_testing.RankedResult`:
extracting the top genes, calling up/down regulation, summarizing,
joining gene annotation and writing delimited files.

References:
    - Robinson MD, McCarthy DJ, Smyth GK (2010). edgeR: a Bioconductor
      package for differential expression analysis of digital gene
      expression data. Bioinformatics 26:139-140
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

ANNOTATION_COLUMNS = ("symbol", "description")


def _logfc_columns(table):
    return [c for c in table.columns if c == "logFC" or c.startswith("logFC.")]


def top_tags(ranked, n=10, fdr=1.0, sort_by="PValue"):
    """
    Most significant genes.

    Parameters
    ----------
    ranked : RankedResult
    n : int or None, default 10
        Number of rows; None returns every row passing ``fdr``.
    fdr : float, default 1.0
        Keep only genes with ``FDR <= fdr``.
    sort_by : {"PValue", "logFC"}
        ``logFC`` orders by absolute fold change (single contrast only).

    Returns
    -------
    pd.DataFrame
    """
    table = ranked.significant(fdr)
    if sort_by == "logFC":
        cols = _logfc_columns(table)
        if len(cols) != 1:
            raise ValueError("sort_by='logFC' needs a single-contrast result")
        key = -np.abs(table[cols[0]].to_numpy())
        order = np.lexsort((table.index.to_numpy().astype(str), key))
        table = table.iloc[order]
    elif sort_by != "PValue":
        raise ValueError(f"Unknown sort_by: {sort_by!r}")
    return table if n is None else table.head(n)


def decide_tests(ranked, fdr=0.05, lfc=0.0):
    """
    Classify genes as up (1), down (-1) or not significant (0).

    A gene is significant when ``FDR <= fdr`` and, if ``lfc > 0``, its
    absolute log2 fold change is at least ``lfc``. For multi-contrast
    tests the direction is not defined and significant genes get 1.

    Returns
    -------
    pd.Series
        Integer calls indexed by gene id, in the table's order.
    """
    table = ranked.table
    sig = (table["FDR"] <= fdr).to_numpy()
    cols = _logfc_columns(table)
    if len(cols) == 1:
        fc = table[cols[0]].to_numpy()
        sig &= np.abs(fc) >= lfc
        calls = np.where(sig, np.sign(fc), 0).astype(int)
    else:
        calls = sig.astype(int)
    return pd.Series(calls, index=table.index, name="call")


def summary(ranked, fdr=0.05, lfc=0.0):
    """
    Count up, down and non-significant genes.

    Returns
    -------
    dict
        Keys ``Down``, ``NotSig``, ``Up`` and ``total``.
    """
    calls = decide_tests(ranked, fdr=fdr, lfc=lfc)
    summary_dict = {
        "Down": int((calls < 0).sum()),
        "NotSig": int((calls == 0).sum()),
        "Up": int((calls > 0).sum()),
        "total": len(calls),
    }
    logger.info("Summary at FDR <= %g: %d up, %d down, %d not significant",
                fdr, summary_dict["Up"], summary_dict["Down"], summary_dict["NotSig"])
    return summary_dict


def annotate(table, annotation):
    """
    Left-join gene annotation onto a result table.

    Parameters
    ----------
    table : pd.DataFrame
        Result table indexed by gene id.
    annotation : pd.DataFrame, dict or callable
        A DataFrame indexed by gene id with ``symbol`` and/or
        ``description`` columns; a mapping ``{gene_id: (symbol,
        description)}``; or a callable taking the list of gene ids and
        returning either of those.

    Returns
    -------
    pd.DataFrame
        ``table`` with ``symbol`` and ``description`` columns. Genes the
        annotation does not know get empty strings.
    """
    if callable(annotation):
        annotation = annotation([str(g) for g in table.index])
    if isinstance(annotation, dict):
        annotation = pd.DataFrame.from_dict(
            {str(k): tuple(v) for k, v in annotation.items()},
            orient="index", columns=list(ANNOTATION_COLUMNS))
    if not isinstance(annotation, pd.DataFrame):
        raise TypeError("annotation must be a DataFrame, a dict or a callable")

    ann = annotation.copy()
    ann.index = ann.index.astype(str)
    ann = ann[~ann.index.duplicated(keep="first")]
    for col in ANNOTATION_COLUMNS:
        if col not in ann.columns:
            ann[col] = ""

    out = table.copy()
    ids = out.index.astype(str)
    for col in ANNOTATION_COLUMNS:
        out[col] = ann[col].reindex(ids).fillna("").astype(str).to_numpy()

    n_missing = int((~ids.isin(ann.index)).sum())
    if n_missing:
        logger.info("No annotation for %d of %d genes", n_missing, len(out))
    return out


def write_results(ranked, path, sep="\t", annotation=None, warnings_path=None):
    """
    Write the ranked table to a delimited file.

    Parameters
    ----------
    ranked : RankedResult
    path : str or Path
    sep : str, default tab
    annotation : optional
        Joined with :func:`annotate` before writing.
    warnings_path : str or Path, optional
        Where to write the per-gene warnings table; nothing is written
        when None or when there are no warnings.

    Returns
    -------
    Path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table = ranked.table
    if annotation is not None:
        table = annotate(table, annotation)
    table.to_csv(path, sep=sep, index_label="gene_id")
    logger.info("Wrote %d rows to %s", len(table), path)

    if warnings_path is not None and len(ranked.warnings):
        warnings_path = Path(warnings_path)
        ranked.warnings.to_csv(warnings_path, sep=sep, index=False)
        logger.info("Wrote %d warnings to %s", len(ranked.warnings), warnings_path)
    return path
