import numpy as np
from scipy.stats import chi2

from edger_py.errors import GeneWarning
from edger_py.lrt import ContrastResult
from edger_py.multiple_testing import benjamini_hochberg, rank_genes


def make_result(gene_ids, pvalues, log_fc=None, warnings=()):
    n = len(gene_ids)
    log_fc = np.zeros(n) if log_fc is None else np.asarray(log_fc, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)
    return ContrastResult(np.asarray(gene_ids), np.array([[0.0], [1.0]]),
                          log_fc.reshape(-1, 1), np.full(n, 5.0),
                          chi2.isf(pvalues, 1), pvalues, 1, tuple(warnings))


def test_bh_known_values():
    padj = benjamini_hochberg([0.01, 0.04, 0.03, 0.005])
    np.testing.assert_allclose(padj, [0.02, 0.04, 0.04, 0.02])


def test_bh_bounds_and_monotonicity():
    rng = np.random.default_rng(0)
    p = rng.uniform(size=500) ** 2
    padj = benjamini_hochberg(p)
    assert np.all(padj >= p)
    assert np.all(padj <= 1)
    order = np.argsort(p)
    assert np.all(np.diff(padj[order]) >= 0)


def test_bh_keeps_nan():
    padj = benjamini_hochberg([0.01, np.nan, 0.02])
    assert np.isnan(padj[1])
    np.testing.assert_allclose(padj[[0, 2]], [0.02, 0.02])


def test_bh_empty():
    assert benjamini_hochberg([]).shape == (0,)


def test_rank_sorts_by_pvalue_then_gene_id():
    ranked = rank_genes(make_result(["b", "a", "c"], [0.5, 0.5, 0.1]))
    assert list(ranked.gene_ids) == ["c", "a", "b"]
    assert list(ranked.table.columns) == ["logFC", "logCPM", "LR", "PValue", "FDR"]
    assert len(ranked) == 3
    assert ranked.df == 1


def test_significant_and_flagged():
    warn = GeneWarning("g2", "glm", "convergence", "IRLS stopped")
    ranked = rank_genes(make_result(["g1", "g2", "g3"], [1e-4, 0.01, 0.8]),
                        warning_groups=((warn,),))
    assert list(ranked.significant(0.05).index) == ["g1", "g2"]
    assert list(ranked.flagged().index) == ["g2"]
    assert ranked.warnings.iloc[0]["stage"] == "glm"


def test_contrast_warnings_are_reported():
    warn = GeneWarning("g3", "lrt", "numerical", "likelihood ratio could not be computed")
    ranked = rank_genes(make_result(["g1", "g3"], [0.2, 1.0], warnings=(warn,)))
    assert list(ranked.warnings["gene_id"]) == ["g3"]
