"""Tests for GLM statistics."""

import numpy as np
import pytest
from scipy import stats

from connectome_stats.exceptions import DegenerateDesignError
from connectome_stats.stats.design import ElementColumns, Hypothesis
from connectome_stats.stats.glm import (
    FixedGLMTest,
    VariableGLMTest,
    all_stats,
    make_glm_test,
    partition,
)
from connectome_stats.stats import glm as glm_module
from connectome_stats.stats.shuffle import Shuffle, Shuffler

T_GROUP = Hypothesis(matrix=[0, 1], name="t1")


def _shuffles(n_subjects, n=20, error_type="ee", seed=5):
    return list(Shuffler(n_subjects, n_shuffles=n, error_type=error_type, seed=seed))


def test_t_matches_two_sample_ttest(group_design, edge_data):
    glm = FixedGLMTest(edge_data, group_design, [T_GROUP])
    t = glm(Shuffle(index=0))[:, 0]
    expected = stats.ttest_ind(edge_data[:10], edge_data[10:], axis=0).statistic
    np.testing.assert_allclose(t, expected, rtol=1e-10)


def test_identity_shuffle_reproduces_unshuffled(group_design, edge_data):
    glm = FixedGLMTest(edge_data, group_design, [T_GROUP])
    identity = Shuffle(index=0, permutation=np.arange(20), signs=np.ones(20))
    np.testing.assert_allclose(glm(identity), glm(Shuffle(index=0)))


def test_negated_contrast_negates_t(group_design, edge_data):
    glm = FixedGLMTest(edge_data, group_design, [T_GROUP, Hypothesis(matrix=[0, -1], name="t2")])
    out = glm(Shuffle(index=0))
    np.testing.assert_allclose(out[:, 0], -out[:, 1])


def test_single_row_F_equals_abs_t(group_design, edge_data):
    F = Hypothesis(matrix=[[0, 1]], name="F1", is_F=True)
    glm = FixedGLMTest(edge_data, group_design, [T_GROUP, F])
    for shuffle in _shuffles(20):
        out = glm(shuffle)
        np.testing.assert_allclose(out[:, 1], np.abs(out[:, 0]), atol=1e-12)


def test_F_nonnegative_under_shuffling(covariate_design, edge_data):
    F = Hypothesis(matrix=[[0, 1, 0], [0, 0, 1]], name="F1", is_F=True)
    glm = FixedGLMTest(edge_data, covariate_design, [F])
    for shuffle in _shuffles(20, n=50, error_type="both"):
        out = glm(shuffle)
        assert np.all(np.isfinite(out))
        assert np.all(out >= 0)


def test_F_matches_nested_model_comparison(covariate_design, edge_data):
    F = Hypothesis(matrix=[[0, 1, 0], [0, 0, 1]], name="F1", is_F=True)
    root_F = FixedGLMTest(edge_data, covariate_design, [F])(Shuffle(index=0))[:, 0]

    def sse(design):
        residuals = edge_data - design @ np.linalg.lstsq(design, edge_data, rcond=None)[0]
        return np.sum(residuals ** 2, axis=0)

    full, reduced = sse(covariate_design), sse(covariate_design[:, :1])
    expected = ((reduced - full) / 2) / (full / (20 - 3))
    np.testing.assert_allclose(root_F ** 2, expected, rtol=1e-8)


def test_partition_separates_nuisance(covariate_design):
    part = partition(covariate_design, np.array([[0.0, 1.0, 0.0]]))
    assert part.X.shape == (20, 1)
    assert part.Z.shape == (20, 2)
    # The residual-forming matrix annihilates the nuisance space
    np.testing.assert_allclose(part.Rz @ part.Z, 0, atol=1e-10)


def test_fixed_requires_finite(group_design, edge_data):
    data = edge_data.copy()
    data[0, 0] = np.nan
    with pytest.raises(ValueError):
        FixedGLMTest(data, group_design, [T_GROUP])
    assert isinstance(make_glm_test(data, group_design, [T_GROUP]), VariableGLMTest)
    assert isinstance(make_glm_test(edge_data, group_design, [T_GROUP]), FixedGLMTest)


def _t_group(y, design):
    """Direct OLS t-value of the group column."""
    betas, sse = np.linalg.lstsq(design, y, rcond=None)[:2]
    dof = design.shape[0] - design.shape[1]
    cov = np.linalg.inv(design.T @ design) * sse[0] / dof
    return betas[1] / np.sqrt(cov[1, 1])


@pytest.mark.parametrize("error_type", ["ee", "both"])
def test_variable_excludes_non_finite_subjects(group_design, edge_data, error_type):
    data = edge_data.copy()
    data[0, 3] = np.nan
    variable = VariableGLMTest(data, group_design, [T_GROUP])
    full = FixedGLMTest(edge_data, group_design, [T_GROUP])

    keep = np.ones(20, dtype=bool)
    keep[0] = False
    design = group_design[keep]
    # Nuisance residuals of the retained subjects at element 3
    y = partition(design, np.array([[0.0, 1.0]])).Rz @ data[keep, 3]
    padded = np.zeros(20)
    padded[keep] = y

    for shuffle in [Shuffle(index=0)] + _shuffles(20, n=10, error_type=error_type)[1:]:
        out = variable(shuffle)
        others = np.arange(10) != 3
        # Unaffected elements match the shared-design fit
        np.testing.assert_allclose(out[others, 0], full(shuffle)[others, 0], atol=1e-10)
        # The affected element sees the full shuffle narrowed to retained subjects
        rows = keep if shuffle.permutation is None else keep[shuffle.permutation]
        shuffled = shuffle.apply(padded)[rows]
        np.testing.assert_allclose(out[3, 0], _t_group(shuffled, design), rtol=1e-8, atol=1e-10)


def test_variable_with_element_columns_matches_fixed(group_design, edge_data):
    rng = np.random.default_rng(11)
    covariate = rng.standard_normal(20)
    columns = ElementColumns([np.repeat(covariate[:, np.newaxis], 10, axis=1)])
    hyps = [Hypothesis(matrix=[0, 1, 0], name="t1"), Hypothesis(matrix=[0, 0, 1], name="t2")]

    variable = VariableGLMTest(edge_data, group_design, hyps, columns)
    fixed = FixedGLMTest(edge_data, np.column_stack([group_design, covariate]), hyps)
    assert variable.n_factors == 3
    for shuffle in _shuffles(20, n=10, error_type="both"):
        np.testing.assert_allclose(variable(shuffle), fixed(shuffle), atol=1e-10)


def test_variable_degenerate_element(group_design, edge_data):
    data = edge_data.copy()
    data[:18, 2] = np.nan
    with pytest.raises(DegenerateDesignError) as excinfo:
        VariableGLMTest(data, group_design, [T_GROUP])
    assert excinfo.value.element == 2
    assert excinfo.value.n_rows == 2
    assert excinfo.value.n_factors == 2
    assert "Element 2" in str(excinfo.value)


def test_variable_terms_cache_by_pattern(group_design, edge_data):
    data = edge_data.copy()
    data[0, [1, 2]] = np.nan
    data[5, 7] = np.nan
    glm = VariableGLMTest(data, group_design, [T_GROUP])
    glm(Shuffle(index=0))
    # One entry per exclusion pattern: none, subject 0, subject 5
    assert len(glm._terms_cache) == 3


def test_variable_terms_cache_limit(group_design, edge_data, monkeypatch):
    data = edge_data.copy()
    for e in range(10):
        data[e, e] = np.nan
    cached = VariableGLMTest(data, group_design, [T_GROUP])

    monkeypatch.setattr(glm_module, "TERMS_CACHE_LIMIT_BYTES", 0)
    uncached = VariableGLMTest(data, group_design, [T_GROUP])
    for shuffle in _shuffles(20, n=5, error_type="both"):
        np.testing.assert_allclose(uncached(shuffle), cached(shuffle), atol=1e-12)
    assert uncached._terms_cache == {}
    assert len(cached._terms_cache) == 10


def test_all_stats_fixed(group_design, edge_data):
    F = Hypothesis(matrix=[[0, 1]], name="F1", is_F=True)
    aux = all_stats(edge_data, group_design, [T_GROUP, F])
    betas = np.linalg.lstsq(group_design, edge_data, rcond=None)[0]

    np.testing.assert_allclose(aux.betas, betas, atol=1e-10)
    np.testing.assert_allclose(aux.abs_effect[:, 0], betas[1], atol=1e-10)
    assert np.all(np.isnan(aux.abs_effect[:, 1]))
    assert np.all(aux.stdev > 0)
    np.testing.assert_allclose(aux.std_effect[:, 0], aux.abs_effect[:, 0] / aux.stdev)
    assert np.allclose(aux.cond, aux.cond[0])


def test_all_stats_variable(group_design, edge_data):
    data = edge_data.copy()
    data[0, 3] = np.nan
    aux = all_stats(data, group_design, [T_GROUP])
    assert np.all(np.isfinite(aux.betas))

    reduced = np.linalg.lstsq(group_design[1:], edge_data[1:, 3], rcond=None)[0]
    np.testing.assert_allclose(aux.betas[:, 3], reduced, atol=1e-10)
    np.testing.assert_allclose(aux.abs_effect[3, 0], reduced[1], atol=1e-10)
    assert aux.cond[3] != aux.cond[0]
