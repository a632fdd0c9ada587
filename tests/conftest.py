import numpy as np
import pandas as pd
import pytest

from edger_py.dataset import CountMatrix
from edger_py.design import model_matrix


SAMPLES = ["A1", "A2", "A3", "B1", "B2", "B3"]
GROUPS = ["A", "A", "A", "B", "B", "B"]


@pytest.fixture
def metadata():
    return pd.DataFrame({"group": GROUPS}, index=SAMPLES)


@pytest.fixture
def group_design(metadata):
    return model_matrix(metadata, ["group"])


@pytest.fixture
def shift_counts():
    """Two genes with a 4x shift between groups, two without."""
    data = np.array([
        [100, 104, 96, 400, 410, 392],
        [400, 396, 408, 100, 98, 104],
        [300, 310, 290, 296, 306, 298],
        [150, 146, 155, 152, 148, 150],
    ])
    return pd.DataFrame(data, index=["g1", "g2", "g3", "g4"], columns=SAMPLES)


def simulate_nb(n_genes=200, dispersion=0.1, seed=42):
    rng = np.random.default_rng(seed)
    base = np.exp(rng.uniform(np.log(20), np.log(2000), n_genes))
    group = np.array([0, 0, 0, 1, 1, 1])
    fc = np.ones(n_genes)
    fc[:20] = 4.0
    fc[20:40] = 0.25
    lib_scale = np.array([1.0, 1.2, 0.8, 1.1, 0.9, 1.0])
    mu = base[:, None] * lib_scale[None, :] * np.where(group == 1, fc[:, None], 1.0)
    if np.ndim(dispersion):
        dispersion = np.asarray(dispersion, dtype=float)[:, None]
    r = 1.0 / dispersion
    counts = rng.negative_binomial(r, r / (r + mu))
    gene_ids = [f"gene_{i:03d}" for i in range(n_genes)]
    return pd.DataFrame(counts, index=gene_ids, columns=SAMPLES)


@pytest.fixture
def nb_counts():
    return simulate_nb()


@pytest.fixture
def nb_matrix(nb_counts):
    return CountMatrix.from_dataframe(nb_counts)


@pytest.fixture
def variable_nb_matrix():
    """Gene-specific dispersions scattered log-normally around 0.1."""
    phi = 0.1 * np.exp(np.random.default_rng(7).normal(0.0, 1.0, 300))
    return CountMatrix.from_dataframe(simulate_nb(300, dispersion=phi, seed=7))
