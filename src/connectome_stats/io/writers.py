"""Writing of statistical outputs as connectome matrices and tables."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from ..stats.design import Hypothesis
from ..stats.topology import Mat2Vec

logger = logging.getLogger(__name__)


class OutputWriter:
    """Save edge-wise results under an output directory.

    Edge vectors are written back as symmetric connectome matrices. File
    names carry a ``_<hypothesis>`` postfix only when more than one
    hypothesis is tested.
    """

    def __init__(self, output_dir: str | Path, mat2vec: Mat2Vec, hypotheses: list[Hypothesis]):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.mat2vec = mat2vec
        self.hypotheses = hypotheses

    def postfix(self, ih: int) -> str:
        return f"_{self.hypotheses[ih].name}" if len(self.hypotheses) > 1 else ""

    def save_edges(self, vector: np.ndarray, name: str) -> Path:
        path = self.output_dir / f"{name}.csv"
        np.savetxt(path, self.mat2vec.v2m(np.asarray(vector, dtype=float)), delimiter=",", fmt="%.10g")
        logger.debug("Wrote %s", path)
        return path

    def save_vector(self, vector: np.ndarray, name: str) -> Path:
        path = self.output_dir / f"{name}.txt"
        np.savetxt(path, np.asarray(vector, dtype=float), fmt="%.10g")
        logger.debug("Wrote %s", path)
        return path

    def save_per_hypothesis(self, matrix: np.ndarray, name: str, t_only: bool = False) -> None:
        """Save each column of an (n_edges, n_hypotheses) matrix."""
        for ih, hyp in enumerate(self.hypotheses):
            if t_only and hyp.is_F:
                continue
            self.save_edges(matrix[:, ih], name + self.postfix(ih))

    def save_edge_table(self, columns: dict[str, np.ndarray], name: str = "edges") -> Path:
        """Write one row per edge with its node pair and the given values."""
        df = pd.DataFrame({"node_a": self.mat2vec.rows, "node_b": self.mat2vec.cols})
        for key, values in columns.items():
            df[key] = values
        path = self.output_dir / f"{name}.csv"
        df.to_csv(path, index=False)
        logger.info("Edge table: %s (%d edges)", path, len(df))
        return path
