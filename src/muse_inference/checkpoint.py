"""Saving and restoring a :class:`~muse_inference.MuseResult`.

A checkpoint is the whole result (estimate, history, generator state)
serialised with ``joblib``.  :func:`~muse_inference.muse` writes one
after every iteration when ``checkpoint_filename`` is set, so an
interrupted run can be resumed with::

    result = load_checkpoint("run.joblib")
    result = muse(prob, result=result, maxsteps=50)

Writes go to a temporary file in the same directory that then replaces
the target, so a crash mid-write never leaves a truncated checkpoint.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import joblib

from ._results import MuseResult

logger = logging.getLogger(__name__)


def save_checkpoint(result: MuseResult, path: str | os.PathLike[str]) -> Path:
    """Write *result* to *path* atomically.

    Returns:
        The resolved checkpoint path.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    os.close(fd)
    try:
        joblib.dump(result, tmp_name)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Checkpoint written to %s (%d iterations)", path, len(result.history))
    return path


def load_checkpoint(path: str | os.PathLike[str]) -> MuseResult:
    """Read a result written by :func:`save_checkpoint`.

    Raises:
        TypeError: If the file does not hold a :class:`MuseResult`.
    """
    result = joblib.load(path)
    if not isinstance(result, MuseResult):
        raise TypeError(
            f"{path} does not contain a MuseResult (found {type(result).__name__})."
        )
    return result


__all__ = ["load_checkpoint", "save_checkpoint"]
