"""Loading of connectomes, design matrices and shuffling inputs."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from ..exceptions import ShapeMismatchError
from ..stats.topology import Mat2Vec

logger = logging.getLogger(__name__)


def load_matrix(path: str | Path) -> np.ndarray:
    """Load a numeric matrix from a comma- or whitespace-delimited text file.

    Non-numeric entries such as ``nan`` or ``inf`` are kept as non-finite
    values.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(path) as f:
        first = next((line for line in f if line.strip() and not line.startswith("#")), "")
    delimiter = "," if "," in first else None
    return np.loadtxt(path, delimiter=delimiter, ndmin=2, comments="#")


def load_vector(path: str | Path) -> np.ndarray:
    """Load a single row or column of values."""
    matrix = load_matrix(path)
    if 1 not in matrix.shape:
        raise ValueError(f"Expected a vector in {path}, got a {matrix.shape[0]}x{matrix.shape[1]} matrix")
    return matrix.ravel()


def load_connectome(path: str | Path) -> np.ndarray:
    """Load an undirected connectome, stored in its upper triangle.

    Full symmetric matrices and matrices with only the upper or only the
    lower triangle filled are accepted; directed matrices are rejected.
    """
    matrix = load_matrix(path)
    if matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"Connectome {path} is not square ({matrix.shape[0]}x{matrix.shape[1]})")

    upper = np.triu(matrix, 1)
    lower = np.tril(matrix, -1).T
    if np.allclose(upper, lower, equal_nan=True) or not np.any(lower):
        return matrix
    if not np.any(upper):
        return matrix.T
    raise ValueError(f"Connectome from file \"{Path(path).name}\" is a directed matrix")


class CohortImport:
    """Edge-wise data for a cohort of subjects.

    Parameters
    ----------
    paths : list[Path]
        One connectome file per subject, in cohort order.

    Attributes
    ----------
    data : ndarray, shape (n_subjects, n_edges)
    mat2vec : Mat2Vec
    """

    def __init__(self, paths: list[str | Path]):
        self.paths = [Path(p) for p in paths]
        if not self.paths:
            raise ValueError("Cohort contains no subjects")

        vectors = []
        mat2vec = None
        for i, path in enumerate(self.paths):
            matrix = load_connectome(path)
            if mat2vec is None:
                mat2vec = Mat2Vec(matrix.shape[0])
            elif matrix.shape[0] != mat2vec.n_nodes:
                raise ShapeMismatchError(
                    f"Size of connectome for subject {i} (file \"{path}\") does not "
                    f"match that of first subject ({matrix.shape[0]} vs {mat2vec.n_nodes} nodes)"
                )
            vectors.append(mat2vec.m2v(matrix))

        self.mat2vec = mat2vec
        self.data = np.vstack(vectors)
        logger.info(
            "Loaded %d connectomes (%d nodes, %d edges)",
            len(self.paths), mat2vec.n_nodes, mat2vec.n_edges,
        )

    @classmethod
    def from_file(cls, list_path: str | Path) -> CohortImport:
        """Load the cohort listed in a text file, one path per line.

        Relative paths are resolved against the directory of the list file.
        """
        list_path = Path(list_path)
        if not list_path.exists():
            raise FileNotFoundError(f"Cohort file not found: {list_path}")
        paths = []
        for line in list_path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            path = Path(line)
            if not path.is_absolute():
                path = list_path.parent / path
            if not path.exists():
                raise FileNotFoundError(f"Input connectome not found: {path} (listed in {list_path})")
            paths.append(path)
        return cls(paths)

    def __len__(self) -> int:
        return len(self.paths)

    @property
    def n_edges(self) -> int:
        return self.data.shape[1]

    @property
    def all_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.data)))


def load_blocks(path: str | Path) -> np.ndarray:
    """Exchangeability block label per subject."""
    blocks = load_vector(path)
    if not np.all(blocks == np.round(blocks)):
        raise ValueError(f"Exchangeability blocks in {path} must be integers")
    return blocks.astype(np.int64)


def load_permutations(path: str | Path) -> np.ndarray:
    """Explicit permutations, one per row, as 0-based subject indices."""
    perms = load_matrix(path)
    if not np.all(perms == np.round(perms)):
        raise ValueError(f"Permutations in {path} must be integer subject indices")
    return perms.astype(np.int64)
