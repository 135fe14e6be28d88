import numpy as np
import pandas as pd
import pytest


def simulate_reads(seed, n_reads, fractions, n_decoys=0, error=0.02):
    """
    Draws the allele of origin of each read from ``fractions`` and builds a
    likelihood matrix that favours the allele of origin. Decoy alleles
    explain every read poorly.
    """
    rng = np.random.default_rng(seed)
    n_true = len(fractions)
    origin = rng.choice(n_true, size=n_reads, p=fractions)
    likes = rng.uniform(error / 10, error, size=(n_reads, n_true + n_decoys))
    likes[np.arange(n_reads), origin] = rng.uniform(0.5, 1.0, size=n_reads)
    return likes, origin


@pytest.fixture
def two_reads():
    return np.array([[0.9, 0.1], [0.2, 0.8]])


@pytest.fixture
def simulate_small():
    likes, origin = simulate_reads(seed=26, n_reads=50, fractions=[0.7, 0.3])
    yield likes, origin


@pytest.fixture
def simulate_table():
    likes, origin = simulate_reads(
        seed=11, n_reads=200, fractions=[0.6, 0.4], n_decoys=1
    )
    table = pd.DataFrame(
        np.log(likes),
        index=[f"read{i}" for i in range(likes.shape[0])],
        columns=["A", "C", "G"],
    )
    yield table, origin
