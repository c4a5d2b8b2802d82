"""Tests for shuffle generation."""

import logging
import math

import numpy as np
import pytest

from connectome_stats.exceptions import ShuffleError
from connectome_stats.stats import shuffle as shuffle_module
from connectome_stats.stats.shuffle import ErrorType, Shuffle, Shuffler


def _keys(shuffler):
    return [s.key() for s in shuffler]


def test_first_shuffle_is_identity():
    for error_type in ErrorType:
        shuffles = list(Shuffler(10, n_shuffles=20, error_type=error_type, seed=1))
        assert shuffles[0].index == 0
        assert shuffles[0].is_identity
        assert not any(s.is_identity for s in shuffles[1:])


def test_random_shuffles_unique():
    shuffler = Shuffler(20, n_shuffles=500, seed=0)
    shuffles = list(shuffler)
    assert len(shuffles) == 500 == len(shuffler)
    assert not shuffler.exhaustive
    assert [s.index for s in shuffles] == list(range(500))
    assert len(set(s.key() for s in shuffles)) == 500
    for s in shuffles:
        assert sorted(s.permutation.tolist()) == list(range(20))


def test_seed_reproducible():
    assert _keys(Shuffler(12, n_shuffles=50, error_type="both", seed=42)) == _keys(
        Shuffler(12, n_shuffles=50, error_type="both", seed=42)
    )
    assert _keys(Shuffler(12, n_shuffles=50, seed=1)) != _keys(Shuffler(12, n_shuffles=50, seed=2))


def test_exhaustive_permutations(caplog):
    with caplog.at_level(logging.WARNING, logger="connectome_stats.stats.shuffle"):
        shuffler = Shuffler(4, n_shuffles=100, seed=0)
    assert shuffler.exhaustive
    assert len(shuffler) == math.factorial(4)
    assert "exhaustive" in caplog.text

    shuffles = list(shuffler)
    assert len(shuffles) == 24
    assert shuffles[0].is_identity
    assert len(set(s.key() for s in shuffles)) == 24


def test_exhaustive_sign_flips():
    shuffles = list(Shuffler(4, n_shuffles=1000, error_type="ise"))
    assert len(shuffles) == 2 ** 4
    assert shuffles[0].is_identity
    assert all(s.permutation is None for s in shuffles)
    assert len(set(s.key() for s in shuffles)) == 16


def test_exact_space_is_not_reported(caplog):
    with caplog.at_level(logging.WARNING, logger="connectome_stats.stats.shuffle"):
        shuffler = Shuffler(4, n_shuffles=24)
    assert shuffler.exhaustive
    assert caplog.text == ""


def test_within_blocks():
    blocks = np.array([0, 0, 0, 1, 1, 1])
    shuffler = Shuffler(6, n_shuffles=1000, blocks=blocks, within=True)
    assert shuffler.space_size == 36
    shuffles = list(shuffler)
    assert len(shuffles) == 36
    for s in shuffles:
        # Subjects never leave their block
        np.testing.assert_array_equal(blocks[s.permutation], blocks)


def test_whole_blocks():
    blocks = np.array([0, 0, 1, 1, 2, 2])
    shuffler = Shuffler(6, n_shuffles=1000, blocks=blocks, whole=True)
    shuffles = list(shuffler)
    assert len(shuffles) == math.factorial(3)
    for s in shuffles:
        # Blocks move as units and keep their internal order
        pairs = s.permutation.reshape(3, 2)
        assert np.all(pairs[:, 1] == pairs[:, 0] + 1)
        assert np.all(pairs[:, 0] % 2 == 0)


def test_whole_block_sign_flips():
    blocks = np.array([0, 0, 1, 1])
    shuffles = list(Shuffler(4, n_shuffles=100, error_type="ise", blocks=blocks, whole=True))
    assert len(shuffles) == 4
    for s in shuffles:
        assert s.signs[0] == s.signs[1]
        assert s.signs[2] == s.signs[3]


def test_random_within_blocks():
    blocks = np.repeat([1, 2], 8)
    for s in Shuffler(16, n_shuffles=50, blocks=blocks, within=True, seed=3):
        np.testing.assert_array_equal(blocks[s.permutation], blocks)


def test_block_errors():
    with pytest.raises(ShuffleError, match="same number"):
        Shuffler(5, blocks=[0, 0, 0, 1, 1], whole=True)
    with pytest.raises(ShuffleError, match="one per subject"):
        Shuffler(5, blocks=[0, 1], within=True)
    with pytest.raises(ShuffleError):
        Shuffler(5, within=True)


def test_explicit_permutations():
    perms = np.array([[0, 1, 2, 3], [1, 0, 2, 3], [3, 2, 1, 0]])
    shuffles = list(Shuffler(4, permutations=perms))
    assert len(shuffles) == 3
    np.testing.assert_array_equal(shuffles[2].permutation, [3, 2, 1, 0])

    with pytest.raises(ShuffleError, match="identity"):
        Shuffler(4, permutations=perms[1:])
    with pytest.raises(ShuffleError, match="exchangeable"):
        Shuffler(4, permutations=perms, error_type="ise")
    with pytest.raises(ShuffleError, match="not a permutation"):
        Shuffler(4, permutations=[[0, 1, 2, 3], [0, 0, 1, 2]])


def test_explicit_permutations_reject_blocks():
    perms = np.array([[0, 1, 2, 3], [1, 0, 3, 2]])
    with pytest.raises(ShuffleError, match="exchangeability blocks"):
        Shuffler(4, permutations=perms, blocks=[0, 0, 1, 1], within=True)
    with pytest.raises(ShuffleError, match="exchangeability blocks"):
        Shuffler(4, permutations=perms, blocks=[0, 0, 1, 1], whole=True)


def test_exclude_default():
    shuffler = Shuffler(20, n_shuffles=30, seed=9, include_default=False)
    shuffles = list(shuffler)
    assert len(shuffles) == 30
    assert not any(s.is_identity for s in shuffles)
    assert shuffles[0].index == 1

    exhaustive = list(Shuffler(4, n_shuffles=100, include_default=False))
    assert len(exhaustive) == 23
    assert not any(s.is_identity for s in exhaustive)


def test_collisions_raise(monkeypatch):
    shuffler = Shuffler(20, n_shuffles=5, seed=0)
    fixed = Shuffle(index=1, permutation=np.r_[1, 0, np.arange(2, 20)])
    monkeypatch.setattr(shuffler, "_draw", lambda rng, index: fixed)
    monkeypatch.setattr(shuffle_module, "MAX_COLLISIONS", 10)
    with pytest.raises(ShuffleError, match="unique shuffle"):
        list(shuffler)


def test_restrict():
    s = Shuffle(index=3, permutation=np.array([2, 0, 1, 3]), signs=np.array([1.0, -1.0, 1.0, -1.0]))
    local = s.restrict(np.array([True, False, True, True]))
    assert local.index == 3
    # Retained subjects 0, 2, 3 appear as 2, 0, 3 -> local 1, 0, 2
    np.testing.assert_array_equal(local.permutation, [1, 0, 2])
    # Signs of the output rows that draw from retained subjects
    np.testing.assert_array_equal(local.signs, [1.0, -1.0, -1.0])


def test_restrict_matches_full_shuffle():
    data = np.array([10.0, 20.0, 30.0])
    s = Shuffle(index=1, permutation=np.array([2, 0, 1]), signs=np.array([-1.0, 1.0, 1.0]))
    keep = np.array([False, True, True])
    full = s.apply(data)
    np.testing.assert_array_equal(full, [-30.0, 10.0, 20.0])
    # Narrowing the full shuffle to retained subjects drops the row fed by subject 0
    np.testing.assert_array_equal(s.restrict(keep).apply(data[keep]), [-30.0, 20.0])


def test_restrict_signs_only():
    s = Shuffle(index=2, signs=np.array([1.0, -1.0, -1.0, 1.0]))
    local = s.restrict(np.array([True, False, True, True]))
    assert local.permutation is None
    np.testing.assert_array_equal(local.signs, [1.0, -1.0, 1.0])


def test_restrict_random_shuffles():
    rng = np.random.default_rng(4)
    data = rng.standard_normal(12)
    keep = rng.random(12) > 0.3
    for s in Shuffler(12, n_shuffles=30, error_type="both", seed=6):
        full = s.apply(data)
        rows = keep if s.permutation is None else keep[s.permutation]
        np.testing.assert_array_equal(s.restrict(keep).apply(data[keep]), full[rows])


def test_apply():
    data = np.arange(8, dtype=float).reshape(4, 2)
    s = Shuffle(index=1, permutation=np.array([1, 0, 3, 2]), signs=np.array([1.0, -1.0, 1.0, 1.0]))
    np.testing.assert_array_equal(s.apply(data), [[2, 3], [0, -1], [6, 7], [4, 5]])
