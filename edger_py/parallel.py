"""
Gene-wise parallel map.

Per-gene fits share only read-only inputs (design, offsets), so genes
are split into contiguous chunks that joblib runs on separate workers.
Chunk results are concatenated in chunk order, which keeps the output in
input gene order whatever order the workers finish in. Each gene is
computed by the same code path regardless of ``n_jobs``, so serial and
parallel runs agree bit for bit.
"""

import logging

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

logger = logging.getLogger(__name__)

# chunks per worker; more chunks balance uneven per-gene cost
CHUNKS_PER_JOB = 4


def _run_chunk(func, rows, per_gene, shared, on_error, offset):
    out = []
    for i in range(rows.shape[0]):
        args = [arr[i] for arr in per_gene]
        try:
            out.append(func(rows[i], *args, **shared))
        except (np.linalg.LinAlgError, FloatingPointError, ValueError) as exc:
            if on_error is None:
                raise
            logger.debug("Gene %d failed: %s", offset + i, exc)
            out.append(on_error(offset + i, exc))
    return out


def gene_apply(func, rows, per_gene=(), shared=None, n_jobs=1, on_error=None):
    """
    Apply ``func`` to every row of ``rows``, preserving row order.

    Parameters
    ----------
    func : callable
        Called as ``func(row, *per_gene_values, **shared)`` for each gene.
        Must be picklable (a module-level function) when ``n_jobs != 1``.
    rows : np.ndarray
        Genes x samples array; row ``i`` is passed to the ``i``-th call.
    per_gene : sequence of np.ndarray
        Extra arrays indexed by gene along their first axis.
    shared : dict, optional
        Keyword arguments passed unchanged to every call.
    n_jobs : int, default 1
        Number of joblib workers; -1 uses all cores.
    on_error : callable, optional
        ``on_error(gene_index, exc)`` returns a placeholder result for a
        gene whose computation raised a numerical error. If None the
        error propagates.

    Returns
    -------
    list
        One result per row, in row order.
    """
    rows = np.asarray(rows)
    per_gene = [np.asarray(a) for a in per_gene]
    shared = dict(shared or {})
    G = rows.shape[0]
    if G == 0:
        return []

    n_workers = effective_n_jobs(n_jobs)
    if n_workers == 1:
        return _run_chunk(func, rows, per_gene, shared, on_error, 0)

    bounds = np.array_split(np.arange(G), min(G, n_workers * CHUNKS_PER_JOB))
    bounds = [b for b in bounds if b.size]
    logger.debug("Dispatching %d genes in %d chunks to %d workers",
                 G, len(bounds), n_workers)

    chunks = Parallel(n_jobs=n_jobs, verbose=0)(
        delayed(_run_chunk)(
            func, rows[b[0]:b[-1] + 1], [a[b[0]:b[-1] + 1] for a in per_gene],
            shared, on_error, int(b[0]))
        for b in bounds
    )
    return [res for chunk in chunks for res in chunk]
