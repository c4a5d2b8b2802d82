"""Mapping between connectome matrices and edge vectors.

Edges are the upper triangle of an undirected connectome, diagonal included,
enumerated row by row: (0,0), (0,1), ..., (0,N-1), (1,1), ...
"""

from __future__ import annotations

import numpy as np


class Mat2Vec:
    """Convert between (N, N) symmetric matrices and N(N+1)/2 edge vectors.

    Parameters
    ----------
    n_nodes : int
        Number of nodes in the connectome.
    """

    def __init__(self, n_nodes: int):
        if n_nodes < 1:
            raise ValueError(f"Connectome must have at least one node, got {n_nodes}")
        self.n_nodes = int(n_nodes)
        self.rows, self.cols = np.triu_indices(self.n_nodes)

    @classmethod
    def from_n_edges(cls, n_edges: int) -> Mat2Vec:
        """Recover the node count from the length of an edge vector."""
        n_nodes = int(round((np.sqrt(8 * n_edges + 1) - 1) / 2))
        if n_nodes * (n_nodes + 1) // 2 != n_edges:
            raise ValueError(f"{n_edges} is not a valid number of connectome edges")
        return cls(n_nodes)

    @property
    def n_edges(self) -> int:
        return len(self.rows)

    def __len__(self) -> int:
        return self.n_edges

    def nodes(self, edge: int) -> tuple[int, int]:
        """Node pair joined by an edge."""
        return int(self.rows[edge]), int(self.cols[edge])

    def m2v(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix)
        if matrix.shape != (self.n_nodes, self.n_nodes):
            raise ValueError(
                f"Expected a {self.n_nodes}x{self.n_nodes} matrix, got {matrix.shape}"
            )
        return matrix[self.rows, self.cols]

    def v2m(self, vector: np.ndarray) -> np.ndarray:
        vector = np.asarray(vector)
        if vector.shape != (self.n_edges,):
            raise ValueError(f"Expected a vector of {self.n_edges} edges, got {vector.shape}")
        matrix = np.zeros((self.n_nodes, self.n_nodes), dtype=vector.dtype)
        matrix[self.rows, self.cols] = vector
        matrix[self.cols, self.rows] = vector
        return matrix
