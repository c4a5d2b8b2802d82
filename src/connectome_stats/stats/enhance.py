"""Statistical enhancement of edge-wise statistics over the connectome graph.

Three algorithms are available:

- ``nbs``: Network-Based Statistic (Zalesky et al., 2010). Edges with a
  statistic above a fixed threshold form a graph over the nodes; each such
  edge is assigned the extent (number of supra-threshold edges) of its
  connected component.
- ``nbse``: threshold-free NBS (Vinokur et al., 2015), i.e. TFCE (Smith &
  Nichols, 2009) applied to NBS component extents:

      enhanced(e) = sum_h { extent(e, h)^E * h^H * dh }

  for h = dh, 2*dh, ... below the maximum statistic. Defaults dh=0.1, E=0.4,
  H=3.0.
- ``none``: the statistic is returned unchanged.

Enhancement is one-sided: only positive statistics contribute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
from scipy import sparse
from scipy.sparse import csgraph

from ..exceptions import ConfigurationError, MissingParameterError
from .topology import Mat2Vec

logger = logging.getLogger(__name__)

TFCE_DH_DEFAULT = 0.1
TFCE_E_DEFAULT = 0.4
TFCE_H_DEFAULT = 3.0


class Algorithm(str, Enum):
    """Enhancement algorithm."""

    NBS = "nbs"
    NBSE = "nbse"
    NONE = "none"


def component_extents(stat: np.ndarray, mat2vec: Mat2Vec, threshold: float) -> np.ndarray:
    """Extent of the supra-threshold component containing each edge.

    Parameters
    ----------
    stat : ndarray, shape (n_edges,)
        Edge-wise statistic.
    mat2vec : Mat2Vec
        Edge to node-pair mapping.
    threshold : float
        Edges with ``stat > threshold`` survive.

    Returns
    -------
    extents : ndarray, shape (n_edges,)
        Number of surviving edges in the component of each surviving edge;
        0 for edges at or below threshold.
    """
    out = np.zeros(len(stat))
    above = stat > threshold
    if not above.any():
        return out

    rows = mat2vec.rows[above]
    cols = mat2vec.cols[above]
    n = mat2vec.n_nodes
    graph = sparse.coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    n_components, labels = csgraph.connected_components(graph, directed=False)

    edge_component = labels[rows]
    extents = np.bincount(edge_component, minlength=n_components)
    out[above] = extents[edge_component]
    return out


def tfce_scores(
    stat: np.ndarray,
    mat2vec: Mat2Vec,
    dh: float = TFCE_DH_DEFAULT,
    E: float = TFCE_E_DEFAULT,
    H: float = TFCE_H_DEFAULT,
) -> np.ndarray:
    """Threshold-free enhancement of an edge-wise statistic."""
    out = np.zeros(len(stat))
    max_val = float(np.max(stat)) if len(stat) else 0.0
    k = 1
    while k * dh < max_val:
        h = k * dh
        extents = component_extents(stat, mat2vec, h)
        members = extents > 0
        out[members] += (extents[members] ** E) * (h ** H) * dh
        k += 1
    return out


@dataclass(frozen=True)
class Enhancer:
    """Immutable enhancement configuration, callable on a statistic vector.

    The same instance is shared by the empirical-statistic estimation and
    the permutation loop.
    """

    algorithm: Algorithm
    mat2vec: Mat2Vec | None = None
    threshold: float | None = None
    dh: float = TFCE_DH_DEFAULT
    E: float = TFCE_E_DEFAULT
    H: float = TFCE_H_DEFAULT

    def __post_init__(self):
        object.__setattr__(self, "algorithm", Algorithm(self.algorithm))
        if self.algorithm is Algorithm.NONE:
            return
        if self.mat2vec is None:
            raise MissingParameterError(
                f"The {self.algorithm.value} algorithm requires the connectome topology"
            )
        if self.algorithm is Algorithm.NBS and self.threshold is None:
            raise MissingParameterError("For the NBS algorithm, a threshold must be provided")
        if self.algorithm is Algorithm.NBSE and self.dh <= 0:
            raise ConfigurationError(f"TFCE height increment must be positive, got {self.dh}")

    def __call__(self, stat: np.ndarray) -> np.ndarray:
        stat = np.asarray(stat, dtype=float)
        if self.algorithm is Algorithm.NBS:
            return component_extents(stat, self.mat2vec, self.threshold)
        if self.algorithm is Algorithm.NBSE:
            return tfce_scores(stat, self.mat2vec, dh=self.dh, E=self.E, H=self.H)
        if self.algorithm is Algorithm.NONE:
            return stat.copy()
        raise ValueError(f"Unknown enhancement algorithm: {self.algorithm}")

    def enhance(self, stats: np.ndarray, empirical: np.ndarray | None = None) -> np.ndarray:
        """Enhance every column of an (n_elements, n_hypotheses) statistic.

        With an empirical statistic, the enhanced values are divided by it
        (non-stationarity adjustment); elements with no empirical support
        are set to zero.
        """
        enhanced = np.column_stack([self(stats[:, ih]) for ih in range(stats.shape[1])])
        if empirical is not None:
            adjusted = np.zeros_like(enhanced)
            np.divide(enhanced, empirical, out=adjusted, where=empirical > 0)
            enhanced = adjusted
        return enhanced


def make_enhancer(
    algorithm: Algorithm | str,
    mat2vec: Mat2Vec | None = None,
    threshold: float | None = None,
    dh: float = TFCE_DH_DEFAULT,
    E: float = TFCE_E_DEFAULT,
    H: float = TFCE_H_DEFAULT,
) -> Enhancer:
    """Build an enhancer, dropping parameters the algorithm does not use."""
    algorithm = Algorithm(algorithm)
    if algorithm is not Algorithm.NBS and threshold is not None:
        if algorithm is Algorithm.NBSE:
            logger.warning("nbse is a threshold-free algorithm; threshold ignored")
        else:
            logger.warning("No enhancement algorithm being used; threshold ignored")
        threshold = None
    return Enhancer(algorithm=algorithm, mat2vec=mat2vec, threshold=threshold, dh=dh, E=E, H=H)
