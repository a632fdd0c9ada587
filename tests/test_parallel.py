import numpy as np
import pytest

from edger_py.parallel import gene_apply


def test_serial_preserves_order():
    rows = np.arange(20, dtype=float).reshape(10, 2)
    out = gene_apply(np.sum, rows)
    assert out == [float(r.sum()) for r in rows]


def test_parallel_matches_serial():
    rng = np.random.default_rng(0)
    rows = rng.normal(size=(37, 5))
    scale = rng.uniform(size=37)
    serial = gene_apply(np.multiply, rows, per_gene=(scale,), n_jobs=1)
    parallel = gene_apply(np.multiply, rows, per_gene=(scale,), n_jobs=2)
    assert len(parallel) == 37
    for a, b in zip(serial, parallel):
        np.testing.assert_array_equal(a, b)


def test_shared_keyword_arguments():
    rows = np.ones((3, 4))
    out = gene_apply(np.sum, rows, shared={"axis": 0})
    assert out == [4.0, 4.0, 4.0]


def test_failures_are_isolated():
    def fragile(row):
        if row[0] < 0:
            raise np.linalg.LinAlgError("singular")
        return row[0]

    rows = np.array([[1.0], [-1.0], [2.0]])
    out = gene_apply(fragile, rows, on_error=lambda i, exc: ("failed", i))
    assert out == [1.0, ("failed", 1), 2.0]

    with pytest.raises(np.linalg.LinAlgError):
        gene_apply(fragile, rows)


def test_empty_input():
    assert gene_apply(np.sum, np.zeros((0, 3))) == []
