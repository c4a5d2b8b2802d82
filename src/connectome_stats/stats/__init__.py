"""Permutation-based statistical inference for edge-wise connectome data."""

from .design import ElementColumns, Hypothesis, check_design, check_inputs, load_hypotheses
from .topology import Mat2Vec
from .glm import (
    AuxiliaryStats,
    FixedGLMTest,
    VariableGLMTest,
    all_stats,
    make_glm_test,
)
from .enhance import Algorithm, Enhancer, make_enhancer
from .shuffle import ErrorType, Shuffle, Shuffler
from .permtest import (
    PermutationResult,
    precompute_default_permutation,
    precompute_empirical_stat,
    run_permutations,
)
from .fwe import fwe_pvalue, uncorrected_pvalue

__all__ = [
    "ElementColumns",
    "Hypothesis",
    "check_design",
    "check_inputs",
    "load_hypotheses",
    "Mat2Vec",
    "AuxiliaryStats",
    "FixedGLMTest",
    "VariableGLMTest",
    "all_stats",
    "make_glm_test",
    "Algorithm",
    "Enhancer",
    "make_enhancer",
    "ErrorType",
    "Shuffle",
    "Shuffler",
    "PermutationResult",
    "precompute_default_permutation",
    "precompute_empirical_stat",
    "run_permutations",
    "fwe_pvalue",
    "uncorrected_pvalue",
]
