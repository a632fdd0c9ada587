import numpy as np
import pandas as pd
import pytest
from scipy.stats import chi2

from edger_py.errors import GeneWarning
from edger_py.lrt import ContrastResult
from edger_py.multiple_testing import rank_genes
from edger_py.results import annotate, decide_tests, summary, top_tags, write_results


@pytest.fixture
def ranked():
    # FDR: g1 4e-5, g2 2e-4, g4 0.0533, g3 0.9
    gene_ids = np.array(["g1", "g2", "g3", "g4"])
    pvalues = np.array([1e-5, 1e-4, 0.9, 0.04])
    log_fc = np.array([[2.0], [-3.0], [0.1], [1.0]])
    result = ContrastResult(gene_ids, np.array([[0.0], [1.0]]), log_fc,
                            np.full(4, 6.0), chi2.isf(pvalues, 1), pvalues, 1)
    warn = GeneWarning("g3", "glm", "convergence", "IRLS stopped after 50 iterations")
    return rank_genes(result, warning_groups=((warn,),))


def test_decide_tests(ranked):
    calls = decide_tests(ranked, fdr=0.05)
    assert calls.name == "call"
    assert calls.to_dict() == {"g1": 1, "g2": -1, "g4": 0, "g3": 0}


def test_decide_tests_with_lfc(ranked):
    calls = decide_tests(ranked, fdr=0.05, lfc=2.5)
    assert calls["g1"] == 0
    assert calls["g2"] == -1


def test_summary(ranked):
    assert summary(ranked) == {"Down": 1, "NotSig": 2, "Up": 1, "total": 4}


def test_top_tags(ranked):
    assert list(top_tags(ranked, n=2).index) == ["g1", "g2"]
    assert list(top_tags(ranked, n=None, fdr=0.05).index) == ["g1", "g2"]
    assert list(top_tags(ranked, n=2, sort_by="logFC").index) == ["g2", "g1"]
    with pytest.raises(ValueError):
        top_tags(ranked, sort_by="FDR")


def test_annotate_from_dict(ranked):
    table = annotate(ranked.table, {"g1": ("SYM1", "first gene")})
    assert table.loc["g1", "symbol"] == "SYM1"
    assert table.loc["g1", "description"] == "first gene"
    assert table.loc["g2", "symbol"] == ""
    assert list(table.index) == list(ranked.table.index)


def test_annotate_from_callable(ranked):
    def lookup(ids):
        return pd.DataFrame({"symbol": [i.upper() for i in ids]}, index=ids)

    table = annotate(ranked.table, lookup)
    assert list(table["symbol"]) == [g.upper() for g in table.index]
    assert set(table["description"]) == {""}


def test_annotate_rejects_other_types(ranked):
    with pytest.raises(TypeError):
        annotate(ranked.table, ["SYM1"])


def test_write_results(ranked, tmp_path):
    out = tmp_path / "sub" / "res.tsv"
    warn_path = tmp_path / "sub" / "res_warnings.tsv"
    path = write_results(ranked, out, annotation={"g2": ("SYM2", "")},
                         warnings_path=warn_path)
    assert path == out

    back = pd.read_csv(out, sep="\t", index_col=0)
    assert back.index.name == "gene_id"
    assert list(back.index) == list(ranked.table.index)
    assert back.loc["g2", "symbol"] == "SYM2"
    np.testing.assert_allclose(back["FDR"], ranked.table["FDR"])

    warn = pd.read_csv(warn_path, sep="\t")
    assert list(warn.columns) == ["gene_id", "stage", "category", "message"]
    assert list(warn["gene_id"]) == ["g3"]
