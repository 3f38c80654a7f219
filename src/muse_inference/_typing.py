"""Shared type aliases for the muse_inference package."""

from collections.abc import Callable, Mapping, Sequence

import numpy as np

# Parameter vectors accepted by the public API before standardisation.
ThetaLike = float | Sequence[float] | np.ndarray | Mapping[str, float | Sequence[float]]

# Anything that ``as_generator`` turns into a ``numpy.random.Generator``.
SeedLike = int | np.random.Generator | None

# Step-size schedule: a constant or a function of the 1-based iteration.
StepSize = float | Callable[[int], float]
