"""Batch source abstractions for replaying datasets through the solver."""

from __future__ import annotations

import logging
import os
from contextlib import AbstractContextManager
from typing import Iterator, Set

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .batch import BatchBuilder
from .errors import BatchSourceError
from .keys import factor_keys, key_label, key_prefix
from .models import MeasurementBatch

logger = logging.getLogger("robust_pgo.source")


class BatchSource(AbstractContextManager):
    """Base class for measurement batch providers."""

    def iter_batches(self) -> Iterator[MeasurementBatch]:  # pragma: no cover - interface method
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - default no-op
        return None

    def __exit__(self, exc_type, exc, tb):
        try:
            self.close()
        finally:
            return False


class G2oBatchSource(BatchSource):
    """Split a g2o file into fixed-size batches, in file order.

    Each batch carries the initial values of the keys it references for the
    first time. With `anchor_trajectories` a prior (at the file's initial
    value) is added on the first pose seen for every key prefix.
    """

    def __init__(self, path: str, is_3d: bool = True, batch_size: int = 100,
                 anchor_trajectories: bool = True, prior_sigma: float = 1e-3):
        if gtsam is None:
            raise BatchSourceError("GTSAM not available; cannot read g2o files")
        if batch_size <= 0:
            raise BatchSourceError(f"batch_size must be positive, got {batch_size}")
        if not os.path.isfile(path):
            raise BatchSourceError(f"g2o file not found: {path}")
        self.path = path
        self.is_3d = is_3d
        self.batch_size = batch_size
        self.anchor_trajectories = anchor_trajectories
        self.prior_sigma = prior_sigma
        try:
            self.graph, self.initial = gtsam.readG2o(path, is_3d)
        except Exception as exc:
            raise BatchSourceError(f"Failed to read {path}: {exc}") from exc
        logger.info("Loaded %s: %d factors, %d values", path, self.graph.size(), self.initial.size())

    def _initial(self, key: int):
        if not self.initial.exists(key):
            return None
        return self.initial.atPose3(key) if self.is_3d else self.initial.atPose2(key)

    def _prior_cov(self) -> np.ndarray:
        dim = 6 if self.is_3d else 3
        return np.eye(dim) * self.prior_sigma ** 2

    def iter_batches(self) -> Iterator[MeasurementBatch]:
        builder = BatchBuilder()
        anchored: Set[str] = set()
        pending = 0
        for i in range(self.graph.size()):
            factor = self.graph.at(i)
            if factor is None:
                continue
            keys = factor_keys(factor)
            if self.anchor_trajectories:
                for k in keys:
                    prefix = key_prefix(k)
                    if prefix in anchored:
                        continue
                    pose = self._initial(k)
                    if pose is None:
                        continue
                    anchored.add(prefix)
                    logger.debug("Anchoring trajectory of %s at %s", repr(prefix), key_label(k))
                    builder.add_prior(k, pose, self._prior_cov())
                    pending += 1
            builder.add_factor(factor, {k: self._initial(k) for k in keys})
            pending += 1
            if pending >= self.batch_size:
                yield builder.pop_batch()
                pending = 0
        if pending:
            yield builder.pop_batch()
