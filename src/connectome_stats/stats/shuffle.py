"""Generation of subject shuffles for permutation testing.

A shuffle relabels subjects (exchangeable errors, ``ee``), flips the sign of
subject rows (independent symmetric errors, ``ise``), or both. The first
shuffle produced is always the identity, so the observed data form part of
their own null distribution.

Exchangeability blocks restrict the shuffles: with ``within`` exchange,
subjects are only permuted within their own block; with ``whole`` exchange,
blocks of equal size are permuted as units, keeping the order of subjects
inside each block.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import numpy as np

from ..exceptions import ShuffleError

logger = logging.getLogger(__name__)

DEFAULT_NUM_SHUFFLES = 5000
DEFAULT_NUM_SHUFFLES_NONSTATIONARITY = 5000

# Consecutive duplicate draws tolerated before giving up
MAX_COLLISIONS = 1000


class ErrorType(str, Enum):
    """Assumption about the errors that determines how subjects are shuffled."""

    EE = "ee"
    ISE = "ise"
    BOTH = "both"


@dataclass(frozen=True, eq=False)
class Shuffle:
    """One relabelling and/or sign assignment of the subjects.

    Attributes
    ----------
    index : int
        Position in the shuffle sequence; 0 is the unshuffled data.
    permutation : ndarray of int, optional
        Row ``i`` of the shuffled data is row ``permutation[i]`` of the input.
    signs : ndarray of float, optional
        +1 / -1 multiplier per row, applied after the permutation.
    """

    index: int
    permutation: np.ndarray | None = None
    signs: np.ndarray | None = None

    @property
    def is_identity(self) -> bool:
        if self.permutation is not None and np.any(self.permutation != np.arange(len(self.permutation))):
            return False
        if self.signs is not None and np.any(self.signs < 0):
            return False
        return True

    def apply(self, data: np.ndarray) -> np.ndarray:
        """Shuffle the rows (subjects) of ``data``."""
        # Unshuffled data are returned as is
        if self.is_identity:
            return data
        out = data
        if self.permutation is not None:
            out = out[self.permutation]
        if self.signs is not None:
            out = out * self.signs.reshape((-1,) + (1,) * (out.ndim - 1))
        return out

    def restrict(self, keep: np.ndarray) -> Shuffle:
        """Shuffle of the subset of subjects flagged in ``keep``.

        Permutations keep the retained subjects in the order in which they
        appear in the full permutation. Signs belong to output rows, so each
        retained output row keeps the sign it has in the full shuffle.
        """
        keep = np.asarray(keep, dtype=bool)
        permutation = None
        rows = keep
        if self.permutation is not None:
            rows = keep[self.permutation]
            local = np.full(len(keep), -1)
            local[keep] = np.arange(int(keep.sum()))
            permutation = local[self.permutation[rows]]
        signs = self.signs[rows] if self.signs is not None else None
        return Shuffle(index=self.index, permutation=permutation, signs=signs)

    def key(self) -> bytes:
        parts = []
        if self.permutation is not None:
            parts.append(np.asarray(self.permutation, dtype=np.int64).tobytes())
        if self.signs is not None:
            parts.append(np.asarray(self.signs > 0).tobytes())
        return b"|".join(parts)


def _block_members(blocks: np.ndarray) -> list[np.ndarray]:
    return [np.flatnonzero(blocks == b) for b in np.unique(blocks)]


class Shuffler:
    """Lazy, reproducible sequence of unique subject shuffles.

    Parameters
    ----------
    n_subjects : int
        Number of subjects (rows of the design matrix).
    n_shuffles : int
        Requested number of shuffles, including the identity. Reduced when
        fewer unique shuffles exist, in which case all are enumerated.
    error_type : ErrorType or str
        ``ee`` for permutations, ``ise`` for sign-flips, ``both`` for both.
    blocks : array-like of int, optional
        Exchangeability block label per subject.
    within : bool
        Permute subjects within blocks.
    whole : bool
        Permute whole blocks (all blocks must have the same size).
    permutations : ndarray of int, optional
        Explicit permutations, one per row; row 0 must be the identity.
    seed : int or numpy.random.Generator, optional
        Source of randomness; the same seed yields the same sequence.
    include_default : bool
        Emit the identity as shuffle 0. Disabled when the shuffles only feed
        an empirical estimate.
    """

    def __init__(
        self,
        n_subjects: int,
        n_shuffles: int = DEFAULT_NUM_SHUFFLES,
        error_type: ErrorType | str = ErrorType.EE,
        blocks: np.ndarray | None = None,
        within: bool = False,
        whole: bool = False,
        permutations: np.ndarray | None = None,
        seed: int | np.random.Generator | None = None,
        include_default: bool = True,
    ):
        if n_subjects < 2:
            raise ShuffleError(f"Cannot shuffle fewer than two subjects (got {n_subjects})")
        if n_shuffles < 1:
            raise ShuffleError(f"Number of shuffles must be positive, got {n_shuffles}")

        self.n_subjects = int(n_subjects)
        self.error_type = ErrorType(error_type)
        self.seed = seed
        self.include_default = include_default
        self._members: list[np.ndarray] = []
        self._blocks = self._check_blocks(blocks, within, whole)
        self.within = within and self._blocks is not None
        self.whole = whole and self._blocks is not None
        self._explicit = None

        if permutations is not None:
            if blocks is not None or within or whole:
                raise ShuffleError("Explicit permutations cannot be combined with exchangeability blocks")
            self._explicit = self._check_permutations(permutations)
            self.n_shuffles = len(self._explicit) - (0 if include_default else 1)
            self.exhaustive = False
            return

        space = self.space_size
        available = space if include_default else space - 1
        self.exhaustive = available <= n_shuffles
        if self.exhaustive:
            if available < n_shuffles:
                logger.warning(
                    "Only %d unique shuffles exist for %d subjects; "
                    "performing exhaustive shuffling instead of %d random shuffles",
                    available, self.n_subjects, n_shuffles,
                )
            self.n_shuffles = int(available)
        else:
            self.n_shuffles = int(n_shuffles)

        if self.n_shuffles < 1:
            raise ShuffleError("No shuffles other than the identity are possible")

    def _check_blocks(self, blocks, within: bool, whole: bool) -> np.ndarray | None:
        if blocks is None:
            if within or whole:
                raise ShuffleError("Block exchange requested but no exchangeability blocks provided")
            return None
        if not (within or whole):
            raise ShuffleError("Exchangeability blocks provided without within or whole exchange")
        blocks = np.asarray(blocks).ravel()
        if blocks.shape != (self.n_subjects,):
            raise ShuffleError(
                f"Exchangeability block vector has {blocks.size} entries; "
                f"expected one per subject ({self.n_subjects})"
            )
        members = _block_members(blocks)
        if len(members) < 2 and whole:
            raise ShuffleError("Whole-block exchange requires at least two blocks")
        if whole and len({len(m) for m in members}) > 1:
            raise ShuffleError(
                "Whole-block exchange requires all blocks to contain the same number "
                f"of subjects (sizes: {[len(m) for m in members]})"
            )
        self._members = members
        return blocks

    def _check_permutations(self, permutations) -> np.ndarray:
        if self.error_type is not ErrorType.EE:
            raise ShuffleError("Explicit permutations can only be used with exchangeable errors")
        perms = np.atleast_2d(np.asarray(permutations))
        if not np.issubdtype(perms.dtype, np.integer):
            if not np.all(perms == np.round(perms)):
                raise ShuffleError("Explicit permutations must contain integer subject indices")
            perms = perms.astype(np.int64)
        if perms.shape[1] != self.n_subjects:
            raise ShuffleError(
                f"Explicit permutations have {perms.shape[1]} columns; "
                f"expected one per subject ({self.n_subjects})"
            )
        identity = np.arange(self.n_subjects)
        for i, row in enumerate(perms):
            if not np.array_equal(np.sort(row), identity):
                raise ShuffleError(f"Explicit permutation {i} is not a permutation of the subjects")
        if not np.array_equal(perms[0], identity):
            raise ShuffleError("The first explicit permutation must be the identity")
        if len({row.tobytes() for row in perms}) != len(perms):
            logger.warning("Explicit permutations contain duplicates")
        return perms

    @property
    def uses_permutations(self) -> bool:
        return self.error_type in (ErrorType.EE, ErrorType.BOTH)

    @property
    def uses_signflips(self) -> bool:
        return self.error_type in (ErrorType.ISE, ErrorType.BOTH)

    @property
    def _signs_per_block(self) -> bool:
        return self.whole and not self.within

    @property
    def space_size(self) -> int:
        """Number of distinct shuffles, including the identity."""
        size = 1
        if self.uses_permutations:
            if self._blocks is None:
                size *= math.factorial(self.n_subjects)
            else:
                if self.whole:
                    size *= math.factorial(len(self._members))
                if self.within:
                    for m in self._members:
                        size *= math.factorial(len(m))
        if self.uses_signflips:
            n_signs = len(self._members) if self._signs_per_block else self.n_subjects
            size *= 2 ** n_signs
        return size

    def __len__(self) -> int:
        return self.n_shuffles

    def __iter__(self) -> Iterator[Shuffle]:
        if self._explicit is not None:
            rows = self._explicit if self.include_default else self._explicit[1:]
            for i, row in enumerate(rows, 0 if self.include_default else 1):
                yield Shuffle(index=i, permutation=row.copy())
            return
        if self.exhaustive:
            yield from self._exhaustive()
        else:
            yield from self._random()

    # -- exhaustive enumeration ---------------------------------------------

    def _all_permutations(self) -> Iterator[np.ndarray]:
        n = self.n_subjects
        if self._blocks is None:
            for p in itertools.permutations(range(n)):
                yield np.array(p)
            return

        members = self._members
        block_orders = (
            itertools.permutations(range(len(members))) if self.whole
            else [tuple(range(len(members)))]
        )
        for order in block_orders:
            within = (
                itertools.product(*(itertools.permutations(range(len(m))) for m in members))
                if self.within else [tuple(tuple(range(len(m))) for m in members)]
            )
            for local in within:
                perm = np.empty(n, dtype=np.int64)
                for target, source in enumerate(order):
                    perm[members[target]] = members[source][list(local[source])]
                yield perm

    def _all_signs(self) -> Iterator[np.ndarray]:
        n_signs = len(self._members) if self._signs_per_block else self.n_subjects
        for s in itertools.product((1.0, -1.0), repeat=n_signs):
            yield self._expand_signs(np.array(s))

    def _expand_signs(self, signs: np.ndarray) -> np.ndarray:
        if not self._signs_per_block:
            return signs
        out = np.empty(self.n_subjects)
        for sign, m in zip(signs, self._members):
            out[m] = sign
        return out

    def _exhaustive(self) -> Iterator[Shuffle]:
        perms = self._all_permutations() if self.uses_permutations else [None]
        if self.uses_signflips:
            combos = ((p, s) for p in perms for s in self._all_signs())
        else:
            combos = ((p, None) for p in perms)

        # The first combination is always the identity
        for index, (perm, signs) in enumerate(combos):
            if index == 0 and not self.include_default:
                continue
            yield Shuffle(index=index, permutation=perm, signs=signs)

    # -- random sampling ----------------------------------------------------

    def _draw(self, rng: np.random.Generator, index: int) -> Shuffle:
        perm = None
        signs = None
        if self.uses_permutations:
            if self._blocks is None:
                perm = rng.permutation(self.n_subjects)
            else:
                members = self._members
                order = rng.permutation(len(members)) if self.whole else np.arange(len(members))
                perm = np.empty(self.n_subjects, dtype=np.int64)
                for target, source in enumerate(order):
                    src = members[source]
                    perm[members[target]] = rng.permutation(src) if self.within else src
        if self.uses_signflips:
            n_signs = len(self._members) if self._signs_per_block else self.n_subjects
            signs = self._expand_signs(rng.integers(0, 2, n_signs) * 2.0 - 1.0)
        return Shuffle(index=index, permutation=perm, signs=signs)

    def _identity(self) -> Shuffle:
        return Shuffle(
            index=0,
            permutation=np.arange(self.n_subjects) if self.uses_permutations else None,
            signs=np.ones(self.n_subjects) if self.uses_signflips else None,
        )

    def _random(self) -> Iterator[Shuffle]:
        rng = np.random.default_rng(self.seed)
        identity = self._identity()
        seen = {identity.key()}
        stop = self.n_shuffles
        if self.include_default:
            yield identity
        else:
            stop += 1

        for index in range(1, stop):
            collisions = 0
            while True:
                shuffle = self._draw(rng, index)
                key = shuffle.key()
                if key not in seen:
                    break
                collisions += 1
                if collisions >= MAX_COLLISIONS:
                    raise ShuffleError(
                        f"Unable to generate a unique shuffle for index {index} after "
                        f"{MAX_COLLISIONS} attempts"
                    )
            seen.add(key)
            yield shuffle
