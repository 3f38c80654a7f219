"""Deterministic splitting of one random generator into many sub-streams.

Every parallel unit of work in a MUSE run (one simulation's data draw,
latent solve and score) owns its own generator.  The generators are
derived from the run's parent generator by :func:`split_rng`, which

1. clones the parent so the parent's state is never advanced,
2. draws one 32-bit integer per requested child from the clone, and
3. seeds each child with that integer using a fresh instance of the
   parent's bit-generator algorithm.

The result depends only on the parent's current state and on *n*,
never on how many workers later consume the children or in which
order.  Because the integers are drawn one at a time, the first *m*
children of ``split_rng(rng, n)`` are identical to
``split_rng(rng, m)`` for any ``m <= n``.  Incremental extension of a
covariance estimate relies on this prefix property.
"""

from __future__ import annotations

import copy

import numpy as np

from ._typing import SeedLike

_SEED_BOUND = 2**32


def as_generator(seed: SeedLike) -> np.random.Generator:
    """Return *seed* as a ``numpy.random.Generator``.

    Generators are passed through untouched (no copy), integers are
    fed to :func:`numpy.random.default_rng`, and ``None`` yields a
    generator seeded from fresh OS entropy.
    """
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def split_rng(rng: np.random.Generator, n: int) -> list[np.random.Generator]:
    """Derive *n* independent child generators from *rng*.

    Args:
        rng: Parent generator.  Not mutated.
        n: Number of children.  ``n <= 0`` returns an empty list.

    Returns:
        List of *n* new generators using the same bit-generator
        algorithm as *rng*.
    """
    if n <= 0:
        return []
    rng_for_split = copy.deepcopy(rng)
    bit_generator_cls = type(rng.bit_generator)
    children = []
    for _ in range(n):
        seed = int(rng_for_split.integers(_SEED_BOUND, dtype=np.uint64))
        children.append(np.random.Generator(bit_generator_cls(seed)))
    return children


__all__ = ["as_generator", "split_rng"]
