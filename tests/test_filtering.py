import numpy as np
import pytest

from edger_py.dataset import CountMatrix
from edger_py.errors import ConfigurationError, ValidationError
from edger_py.filtering import filter_by_expr, filter_counts


def test_filter_is_idempotent(nb_matrix):
    once = filter_counts(nb_matrix, log_cpm_threshold=9.0, min_samples=3)
    twice = filter_counts(once, log_cpm_threshold=9.0, min_samples=3)
    assert 0 < once.n_genes < nb_matrix.n_genes
    np.testing.assert_array_equal(once.gene_ids, twice.gene_ids)
    np.testing.assert_array_equal(once.counts, twice.counts)
    np.testing.assert_array_equal(once.lib_sizes, twice.lib_sizes)


def test_library_sizes_recomputed(nb_matrix):
    filtered = filter_counts(nb_matrix, log_cpm_threshold=9.0, min_samples=3)
    np.testing.assert_array_equal(filtered.lib_sizes, filtered.counts.sum(axis=0))
    assert np.all(filtered.lib_sizes < nb_matrix.lib_sizes)


def test_exclusion_list(shift_counts):
    cm = CountMatrix.from_dataframe(shift_counts)
    filtered = filter_counts(cm, exclude={"g2", "not_a_gene"}, min_samples=3)
    assert list(filtered.gene_ids) == ["g1", "g3", "g4"]


def test_threshold_needs_k_samples():
    counts = np.array([
        [1000, 1000, 0, 0],
        [1000, 1000, 1000, 0],
        [5000, 5000, 5000, 5000],
    ])
    cm = CountMatrix.from_array(counts, gene_ids=["two", "three", "four"])
    mask = filter_by_expr(cm, log_cpm_threshold=10.0, min_samples=3)
    np.testing.assert_array_equal(mask, [False, True, True])


def test_min_samples_out_of_range(shift_counts):
    cm = CountMatrix.from_dataframe(shift_counts)
    with pytest.raises(ConfigurationError):
        filter_counts(cm, min_samples=7)
    with pytest.raises(ConfigurationError):
        filter_counts(cm, min_samples=0)


def test_empty_result_is_an_error(shift_counts):
    cm = CountMatrix.from_dataframe(shift_counts)
    with pytest.raises(ValidationError):
        filter_counts(cm, log_cpm_threshold=25.0, min_samples=1)
    with pytest.raises(ValidationError):
        filter_counts(cm, exclude=["g1", "g2", "g3", "g4"])
