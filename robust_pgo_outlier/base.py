"""Capability interface shared by every outlier-rejection strategy."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Set

from robust_pgo.models import Edge, MeasurementBatch, ObservationId, RejectionStats
from robust_pgo.state import AcceptedState


class OutlierRemoval(ABC):
    """Filters incoming batches against the accepted state.

    The accepted state is borrowed for one call; implementations must not
    keep a reference to it after returning.
    """

    def __init__(self):
        self._quiet = False

    def set_quiet(self) -> None:
        self._quiet = True

    @abstractmethod
    def remove_outliers(self, batch: MeasurementBatch, state: AcceptedState) -> bool:
        """Merge the accepted subset of `batch` into `state`.

        Returns True when enough new information was accepted to warrant a
        re-optimization. Malformed geometry is rejected, never raised.
        """

    @abstractmethod
    def remove_last_loop_closure(self, state: AcceptedState,
                                 observation_id: Optional[ObservationId] = None) -> Optional[Edge]:
        """Drop the most recently accepted loop closure (optionally for one robot pair)."""

    @abstractmethod
    def ignore_loop_closure_with_prefix(self, prefix: str, state: AcceptedState) -> None:
        ...

    @abstractmethod
    def revive_loop_closure_with_prefix(self, prefix: str, state: AcceptedState) -> None:
        ...

    @abstractmethod
    def get_ignored_prefixes(self) -> Set[str]:
        ...

    @abstractmethod
    def get_rejection_stats(self) -> RejectionStats:
        ...

    def save_data(self, folder_path: str) -> None:  # pragma: no cover - default no-op
        return None
