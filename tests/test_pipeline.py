import numpy as np
import pandas as pd
import pytest

from edger_py import AnalysisConfig, CountMatrix, run_pipeline
from edger_py.errors import ConfigurationError, NumericalWarning


@pytest.fixture
def small_config():
    return AnalysisConfig.from_dict({"filter": {"log_cpm_threshold": 1.0, "min_samples": 3}})


def test_shifted_genes_are_called(shift_counts, group_design, small_config):
    with pytest.warns(NumericalWarning):
        res = run_pipeline(shift_counts, group_design, "group[T.B]", config=small_config)

    table = res.table
    assert list(table.columns) == ["logFC", "logCPM", "LR", "PValue", "FDR"]
    assert set(table.index[:2]) == {"g1", "g2"}
    assert set(res.ranked.significant(0.05).index) == {"g1", "g2"}
    assert table.loc["g1", "logFC"] == pytest.approx(2.0, abs=0.1)
    assert table.loc["g2", "logFC"] == pytest.approx(-2.0, abs=0.1)
    assert np.all(table["FDR"] >= table["PValue"])

    # four genes cannot be trimmed: TMM falls back to library sizes
    np.testing.assert_allclose(res.normalization.norm_factors, 1.0)
    assert (res.warnings["stage"] == "normalization").any()
    assert np.isnan(res.dispersion.span)
    np.testing.assert_allclose(res.dispersion.trended, res.dispersion.common)


def test_stage_snapshots(shift_counts, group_design, small_config):
    with pytest.warns(NumericalWarning):
        res = run_pipeline(shift_counts, group_design, "group[T.B]", exclude=["g4"],
                           config=small_config)
    assert "g4" not in res.table.index
    assert res.counts.n_genes == 4
    assert res.filtered.n_genes == 3
    assert res.log_cpm().shape == (3, 6)
    assert res.fitted_log_cpm().shape == (3, 6)
    assert list(res.warnings.columns) == ["gene_id", "stage", "category", "message"]


def test_design_rows_follow_count_columns(nb_counts, group_design):
    shuffled = nb_counts[["B2", "A1", "B3", "A3", "B1", "A2"]]
    a = run_pipeline(nb_counts, group_design, "group[T.B]")
    b = run_pipeline(shuffled, group_design.to_dataframe(), "group[T.B]")
    pd.testing.assert_frame_equal(a.table.sort_index(), b.table.sort_index(), rtol=1e-3)


def test_parallel_matches_serial(nb_counts, group_design):
    serial = run_pipeline(nb_counts, group_design, "group[T.B]",
                          config=AnalysisConfig(n_jobs=1))
    parallel = run_pipeline(CountMatrix.from_dataframe(nb_counts), group_design,
                            "group[T.B]", config=AnalysisConfig(n_jobs=2))
    pd.testing.assert_frame_equal(serial.table, parallel.table, check_exact=True)
    np.testing.assert_array_equal(serial.dispersion.tagwise, parallel.dispersion.tagwise)


def test_finds_simulated_changes(nb_counts, group_design):
    res = run_pipeline(nb_counts, group_design, "group[T.B]")
    hits = set(res.ranked.significant(0.05).index)
    truth = set(nb_counts.index[:40])
    assert len(hits & truth) >= 30
    assert len(hits - truth) <= 5


@pytest.fixture
def no_model_stages(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("model stage ran for an unusable contrast")

    for name in ("estimate_dispersions", "fit_glm", "glm_lrt"):
        monkeypatch.setattr(f"edger_py.pipeline.{name}", fail)


def test_unknown_coefficient_raises_before_fitting(shift_counts, group_design, no_model_stages):
    with pytest.raises(ConfigurationError, match=r"group\[T\.C\]"):
        run_pipeline(shift_counts, group_design, "group[T.C]")


def test_short_contrast_vector_raises_before_fitting(shift_counts, group_design,
                                                     no_model_stages):
    with pytest.raises(ConfigurationError, match="3 rows"):
        run_pipeline(shift_counts, group_design, [0.0, 1.0, 0.0])
