import pytest

from edger_py.config import AnalysisConfig, SignificanceConfig
from edger_py.errors import ConfigurationError


def test_defaults():
    config = AnalysisConfig()
    assert config.normalization.method == "TMM"
    assert config.normalization.logratio_trim == 0.3
    assert config.normalization.sum_trim == 0.05
    assert config.dispersion.grid_length == 21
    assert config.glm.tol == 1e-8
    assert config.testing.fdr == 0.05
    assert config.n_jobs == 1


def test_from_dict():
    config = AnalysisConfig.from_dict({
        "filter": {"log_cpm_threshold": 1.0, "min_samples": 3},
        "dispersion": {"grid_range": [-8, 8]},
        "n_jobs": 2,
    })
    assert config.filter.min_samples == 3
    assert config.dispersion.grid_range == (-8, 8)
    assert config.n_jobs == 2


def test_testing_section():
    config = AnalysisConfig.from_dict({"testing": {"fdr": 0.1}})
    assert config.testing == SignificanceConfig(fdr=0.1, lfc_threshold=0.0)


@pytest.mark.parametrize("mapping", [
    {"filters": {}},
    {"filter": {"threshold": 1}},
    {"normalization": {"method": "quantile"}},
    {"glm": {"tol": 0}},
    {"testing": {"fdr": 1.5}},
    {"n_jobs": 0},
])
def test_invalid_config(mapping):
    with pytest.raises(ConfigurationError):
        AnalysisConfig.from_dict(mapping)


def test_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("normalization:\n  method: RLE\nglm:\n  max_iter: 100\n")
    config = AnalysisConfig.from_yaml(path)
    assert config.normalization.method == "RLE"
    assert config.glm.max_iter == 100


def test_from_yaml_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        AnalysisConfig.from_yaml(tmp_path / "nope.yaml")


def test_with_n_jobs():
    assert AnalysisConfig().with_n_jobs(4).n_jobs == 4
