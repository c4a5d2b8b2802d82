"""Synthetic data fixtures for testing."""

from __future__ import annotations

import numpy as np
import pytest

from connectome_stats.stats.topology import Mat2Vec


N_SUBJECTS = 20
N_NODES = 4  # 10 edges, diagonal included
EFFECT_EDGES = [1, 2, 5]


def _two_group_design(n_subjects: int) -> np.ndarray:
    group = np.r_[np.ones(n_subjects // 2), np.zeros(n_subjects - n_subjects // 2)]
    return np.column_stack([np.ones(n_subjects), group])


def _edge_data(n_subjects: int, n_edges: int, seed: int = 42) -> np.ndarray:
    """Gaussian edge values with a group effect on EFFECT_EDGES."""
    rng = np.random.default_rng(seed)
    data = rng.standard_normal((n_subjects, n_edges))
    data[: n_subjects // 2, EFFECT_EDGES] += 1.5
    return data


@pytest.fixture
def mat2vec():
    return Mat2Vec(N_NODES)


@pytest.fixture
def group_design():
    """Intercept + group membership, 10 subjects per group."""
    return _two_group_design(N_SUBJECTS)


@pytest.fixture
def edge_data(mat2vec):
    return _edge_data(N_SUBJECTS, mat2vec.n_edges)


@pytest.fixture
def covariate_design():
    """Intercept and two continuous covariates (3 factors)."""
    rng = np.random.default_rng(7)
    return np.column_stack([np.ones(N_SUBJECTS), rng.standard_normal((N_SUBJECTS, 2))])


@pytest.fixture
def study_dir(tmp_path):
    """Write a small study (connectomes, design, contrast) to disk."""
    n_subjects, n_nodes = 16, 5
    m2v = Mat2Vec(n_nodes)
    data = _edge_data(n_subjects, m2v.n_edges, seed=3)

    conn_dir = tmp_path / "connectomes"
    conn_dir.mkdir()
    names = []
    for i, row in enumerate(data):
        name = f"sub-{i:02d}.csv"
        np.savetxt(conn_dir / name, m2v.v2m(row), delimiter=",")
        names.append(f"connectomes/{name}")
    (tmp_path / "cohort.txt").write_text("\n".join(names) + "\n")

    np.savetxt(tmp_path / "design.csv", _two_group_design(n_subjects), delimiter=",")
    np.savetxt(tmp_path / "contrast.csv", np.array([[0.0, 1.0], [0.0, -1.0]]), delimiter=",")
    return tmp_path


@pytest.fixture
def sample_config_yaml(study_dir):
    """Create a sample study YAML config pointing to the synthetic study."""
    config_text = """
name: "Test Study"
output_dir: output
input: cohort.txt
design: design.csv
contrast: contrast.csv

algorithm: nbse
tfce:
  dh: 0.2
  e: 0.5
  h: 2.0

permutation:
  n_shuffles: 50
  seed: 1234
  errors: ee
  strong: true

n_threads: 2
"""
    config_path = study_dir / "study.yaml"
    config_path.write_text(config_text)
    return config_path
