"""Pairwise consistency maximisation (PCM) outlier rejection.

Loop closures are grouped per robot pair (ObservationId). Inside a group a
loop closure is first checked against the odometry chain of its own robot
(intra-robot closures only), then checked pairwise against every other
odometry-consistent closure of the group. The accepted subset of a group is
the maximum clique of that pairwise consistency graph.

Two tests are provided:
  - Pcm: squared Mahalanobis norm of the Lie-algebra residual, with
    covariances summed along the cycle (a first-order approximation)
  - PcmSimple: residual translation norm and rotation angle against fixed
    metric thresholds

and two geometries (Pose2 / Pose3), giving Pcm2D, Pcm3D, PcmSimple2D and
PcmSimple3D. Both tests share the bookkeeping in PcmBase.

Measurements may arrive before the odometry or estimates they depend on;
such checks stay pending and are retried on every later update.
"""
from __future__ import annotations

import csv
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from robust_pgo.keys import (LANDMARK, LOOP_CLOSURE, ODOMETRY, PRIOR, factor_kind,
                             factor_keys, is_special, key_index, key_label, key_prefix)
from robust_pgo.models import Edge, MeasurementBatch, ObservationId, RejectionStats
from robust_pgo.noise import factor_covariance
from robust_pgo.state import AcceptedState

from .base import OutlierRemoval

logger = logging.getLogger("robust_pgo.outlier.pcm")


@dataclass
class _Measurement:
    """A loop closure or landmark observation, oriented for cycle checks.

    For loop closures `measured` maps key1 -> key2 where key1 lies on the
    group's first robot (or has the lower index for intra-robot closures).
    """
    seq: int
    factor: object
    key1: int
    key2: int
    measured: object
    cov: np.ndarray
    odom_consistent: Optional[bool] = None  # None: odometry chain incomplete


class _ConsistencyGroup:
    """Measurements sharing an ObservationId (or a landmark key).

    `unresolved` holds member pairs whose cycle could not be closed yet
    because an odometry link was missing; they are retried on later updates.
    """

    def __init__(self, label):
        self.label = label
        self.members: "OrderedDict[int, _Measurement]" = OrderedDict()
        self.graph = nx.Graph()
        self.accepted: Set[int] = set()
        self.unresolved: Set[Tuple[int, int]] = set()

    def pending(self) -> List[_Measurement]:
        return [m for m in self.members.values() if m.odom_consistent is None]

    def consistent(self) -> List[_Measurement]:
        return [m for m in self.members.values() if m.odom_consistent]

    def discard(self, seq: int) -> None:
        self.members.pop(seq, None)
        if self.graph.has_node(seq):
            self.graph.remove_node(seq)
        self.accepted.discard(seq)
        self.unresolved = {pair for pair in self.unresolved if seq not in pair}

    def select_max_clique(self) -> bool:
        """Recompute the accepted set; returns True when it changed."""
        best: List[int] = []
        for clique in nx.find_cliques(self.graph):
            clique = sorted(clique)
            if len(clique) > len(best) or (len(clique) == len(best) and clique < best):
                best = clique
        new = set(best)
        changed = new != self.accepted
        self.accepted = new
        return changed


class PcmBase(OutlierRemoval):
    """Grouping, odometry chaining and clique selection shared by every PCM variant.

    Subclasses supply the consistency test (`_check_odometry`,
    `_check_pairwise`); geometry comes from a Pose2/Pose3 mixin.
    """

    pose_name = ""
    dim = 0

    def __init__(self, special_symbols: Iterable[str] = ()):
        super().__init__()
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run PCM")
        self.special_symbols: Set[str] = set(special_symbols)
        self._between_cls = getattr(gtsam, "BetweenFactor" + self.pose_name)
        self._pose_cls = getattr(gtsam, self.pose_name)

        self._seq = 0
        self._fixed: List = []  # priors, odometry, other factors (arrival order)
        self._odom: Dict[str, Dict[int, Tuple[object, np.ndarray]]] = {}
        self._loop_closures: "OrderedDict[ObservationId, _ConsistencyGroup]" = OrderedDict()
        self._landmarks: "OrderedDict[int, _ConsistencyGroup]" = OrderedDict()
        self._passthrough_landmarks: List = []
        self._ignored: Set[str] = set()
        self._stats = RejectionStats()

    # ------------------------------------------------------------------ geometry

    def _log(self, pose) -> np.ndarray:
        return np.asarray(self._pose_cls.Logmap(pose), dtype=float)

    def _rotation_angle(self, pose) -> float:
        raise NotImplementedError

    def _translation_norm(self, pose) -> float:
        return float(np.linalg.norm(np.asarray(pose.translation(), dtype=float)))

    def _value_at(self, values: "gtsam.Values", key: int):
        return getattr(values, "at" + self.pose_name)(key)

    def _covariance(self, factor) -> np.ndarray:
        return factor_covariance(factor, self.dim)

    # ------------------------------------------------------------ consistency

    def _check_odometry(self, residual, cov: np.ndarray) -> bool:
        raise NotImplementedError

    def _check_pairwise(self, residual, cov: np.ndarray) -> bool:
        raise NotImplementedError

    # -------------------------------------------------------------- odometry

    def _add_odometry(self, factor) -> None:
        """Index the link at its lower pose index, oriented lower -> higher."""
        k1, k2 = factor_keys(factor)
        measured = factor.measured()
        if key_index(k2) < key_index(k1):
            k1, k2 = k2, k1
            measured = measured.inverse()
        self._odom.setdefault(key_prefix(k1), {})[key_index(k1)] = (
            measured, self._covariance(factor))

    def _odom_between(self, prefix: str, i: int, j: int):
        """Relative pose i -> j chained from odometry, or None if a link is missing."""
        edges = self._odom.get(prefix, {})
        pose = self._pose_cls()
        cov = np.zeros((self.dim, self.dim))
        lo, hi = (i, j) if i <= j else (j, i)
        for idx in range(lo, hi):
            link = edges.get(idx)
            if link is None:
                return None
            pose = pose.compose(link[0])
            cov = cov + link[1]
        if i > j:
            pose = pose.inverse()
        return pose, cov

    # ----------------------------------------------------------- loop closures

    def _make_loop_closure(self, factor) -> Tuple[ObservationId, _Measurement]:
        k1, k2 = factor_keys(factor)
        obs_id = ObservationId.from_keys(k1, k2)
        measured = factor.measured()
        if obs_id.is_multirobot():
            flip = key_prefix(k1) != obs_id.id1
        else:
            flip = key_index(k1) > key_index(k2)
        if flip:
            k1, k2 = k2, k1
            measured = measured.inverse()
        self._seq += 1
        m = _Measurement(self._seq, factor, k1, k2, measured, self._covariance(factor))
        if obs_id.is_multirobot():
            m.odom_consistent = True
        return obs_id, m

    def _check_loop_closure_odometry(self, m: _Measurement) -> Optional[bool]:
        chain = self._odom_between(key_prefix(m.key1), key_index(m.key2), key_index(m.key1))
        if chain is None:
            return None
        odom, odom_cov = chain
        return self._check_odometry(m.measured.compose(odom), m.cov + odom_cov)

    def _pairwise(self, a: _Measurement, b: _Measurement) -> Optional[bool]:
        """Cycle test between two closures; None while an odometry link is missing."""
        to_chain = self._odom_between(key_prefix(a.key2), key_index(a.key2), key_index(b.key2))
        from_chain = self._odom_between(key_prefix(a.key1), key_index(b.key1), key_index(a.key1))
        if to_chain is None or from_chain is None:
            return None
        cycle = (a.measured.compose(to_chain[0])
                 .compose(b.measured.inverse())
                 .compose(from_chain[0]))
        return self._check_pairwise(cycle, a.cov + b.cov + to_chain[1] + from_chain[1])

    def _connect(self, group: _ConsistencyGroup, m: _Measurement, pairwise) -> None:
        group.graph.add_node(m.seq)
        for other in group.consistent():
            if other.seq == m.seq:
                continue
            verdict = pairwise(m, other)
            if verdict is None:
                group.unresolved.add((min(m.seq, other.seq), max(m.seq, other.seq)))
            elif verdict:
                group.graph.add_edge(m.seq, other.seq)

    def _retry_unresolved(self, group: _ConsistencyGroup) -> bool:
        touched = False
        for s1, s2 in sorted(group.unresolved):
            verdict = self._pairwise(group.members[s2], group.members[s1])
            if verdict is None:
                continue
            group.unresolved.discard((s1, s2))
            touched = True
            if verdict:
                group.graph.add_edge(s1, s2)
        return touched

    def _settle_pending(self, group: _ConsistencyGroup) -> bool:
        """Retry odometry checks and pairwise cycles that lacked an odometry link."""
        touched = False
        for m in group.pending():
            verdict = self._check_loop_closure_odometry(m)
            if verdict is None:
                continue
            m.odom_consistent = verdict
            touched = True
            if verdict:
                self._connect(group, m, self._pairwise)
        if self._retry_unresolved(group):
            touched = True
        return touched

    # ---------------------------------------------------------------- landmarks

    def _make_landmark(self, factor) -> Tuple[int, _Measurement]:
        k1, k2 = factor_keys(factor)
        measured = factor.measured()
        if is_special(k1, self.special_symbols) and not is_special(k2, self.special_symbols):
            k1, k2 = k2, k1
            measured = measured.inverse()
        self._seq += 1
        return k2, _Measurement(self._seq, factor, k1, k2, measured, self._covariance(factor))

    def _place_landmark(self, m: _Measurement, values: "gtsam.Values") -> bool:
        """Move `measured` into the world frame once the observing pose has an estimate."""
        if not values.exists(m.key1):
            return False
        m.measured = self._value_at(values, m.key1).compose(m.measured)
        m.odom_consistent = True
        return True

    def _settle_landmarks(self, group: _ConsistencyGroup, values: "gtsam.Values") -> bool:
        touched = False
        for m in group.pending():
            if self._place_landmark(m, values):
                self._connect(group, m, self._landmark_pairwise)
                touched = True
        return touched

    def _landmark_pairwise(self, a: _Measurement, b: _Measurement) -> bool:
        return self._check_pairwise(a.measured.between(b.measured), a.cov + b.cov)

    # ------------------------------------------------------------------- output

    def _ignored_closure(self, m: _Measurement) -> bool:
        return key_prefix(m.key1) in self._ignored or key_prefix(m.key2) in self._ignored

    def _output_factors(self) -> List:
        out = list(self._fixed)
        for group in self._loop_closures.values():
            for seq in sorted(group.accepted):
                m = group.members[seq]
                if not self._ignored_closure(m):
                    out.append(m.factor)
        out.extend(self._passthrough_landmarks)
        for group in self._landmarks.values():
            for seq in sorted(group.accepted):
                out.append(group.members[seq].factor)
        return out

    def _refresh_stats(self) -> None:
        s = self._stats
        s.good_lc = s.odom_consistent_lc = s.good_multirobot_lc = 0
        for obs_id, group in self._loop_closures.items():
            s.odom_consistent_lc += len(group.consistent())
            s.good_lc += len(group.accepted)
            if obs_id.is_multirobot():
                s.good_multirobot_lc += len(group.accepted)
        s.good_landmark_measurements = len(self._passthrough_landmarks) + sum(
            len(g.accepted) for g in self._landmarks.values())

    def _rebuild(self, state: AcceptedState) -> None:
        state.replace_factors(self._output_factors())
        self._refresh_stats()

    # -------------------------------------------------------------- interface

    def remove_outliers(self, batch: MeasurementBatch, state: AcceptedState) -> bool:
        self._stats.consistency_error = []
        do_optimize = False
        state.add_values(batch.values)
        touched_lc: Set[ObservationId] = set()
        touched_lm: Set[int] = set()

        for factor in batch.iter_factors():
            kind = factor_kind(factor, self.special_symbols)
            if kind in (ODOMETRY, LOOP_CLOSURE) and not isinstance(factor, self._between_cls):
                logger.warning("Rejecting %s %s: expected %s geometry",
                               kind, [key_label(k) for k in factor_keys(factor)], self.pose_name)
                continue
            if kind == ODOMETRY:
                self._add_odometry(factor)
                self._fixed.append(factor)
            elif kind == LOOP_CLOSURE:
                obs_id, m = self._make_loop_closure(factor)
                group = self._loop_closures.setdefault(obs_id, _ConsistencyGroup(obs_id))
                group.members[m.seq] = m
                self._stats.lc += 1
                if obs_id.is_multirobot():
                    self._stats.multirobot_lc += 1
                    self._connect(group, m, self._pairwise)
                touched_lc.add(obs_id)
            elif kind == LANDMARK:
                self._stats.landmark_measurements += 1
                if isinstance(factor, self._between_cls):
                    lmk, m = self._make_landmark(factor)
                    self._landmarks.setdefault(lmk, _ConsistencyGroup(lmk)).members[m.seq] = m
                    touched_lm.add(lmk)
                else:
                    self._passthrough_landmarks.append(factor)
                    do_optimize = True
            else:
                # priors and anything we do not know how to check
                self._fixed.append(factor)
                if kind == PRIOR or len(factor_keys(factor)) != 2:
                    do_optimize = True

        for obs_id, group in self._loop_closures.items():
            if self._settle_pending(group):
                touched_lc.add(obs_id)
        for lmk, group in self._landmarks.items():
            if self._settle_landmarks(group, state.values):
                touched_lm.add(lmk)
        for obs_id in touched_lc:
            if self._loop_closures[obs_id].select_max_clique():
                do_optimize = True
        for lmk in touched_lm:
            if self._landmarks[lmk].select_max_clique():
                do_optimize = True

        self._rebuild(state)
        if not self._quiet:
            logger.info("PCM: %d/%d loop closures accepted (%d odometry consistent), "
                        "%d/%d landmark measurements accepted",
                        self._stats.good_lc, self._stats.lc, self._stats.odom_consistent_lc,
                        self._stats.good_landmark_measurements, self._stats.landmark_measurements)
        return do_optimize

    def remove_last_loop_closure(self, state: AcceptedState,
                                 observation_id: Optional[ObservationId] = None) -> Optional[Edge]:
        last: Optional[Tuple[_ConsistencyGroup, _Measurement]] = None
        for obs_id, group in self._loop_closures.items():
            if observation_id is not None and obs_id != observation_id:
                continue
            for seq in group.accepted:
                m = group.members[seq]
                if self._ignored_closure(m):
                    continue
                if last is None or m.seq > last[1].seq:
                    last = (group, m)
        if last is None:
            return None
        group, m = last
        group.discard(m.seq)
        self._rebuild(state)
        k1, k2 = factor_keys(m.factor)
        if not self._quiet:
            logger.info("Removed loop closure %s-%s", key_label(k1), key_label(k2))
        return Edge(k1, k2, m.factor)

    def ignore_loop_closure_with_prefix(self, prefix: str, state: AcceptedState) -> None:
        self._ignored.add(prefix)
        self._rebuild(state)
        if not self._quiet:
            logger.info("Ignoring loop closures with prefix %s", prefix)

    def revive_loop_closure_with_prefix(self, prefix: str, state: AcceptedState) -> None:
        self._ignored.discard(prefix)
        self._rebuild(state)
        if not self._quiet:
            logger.info("Reviving loop closures with prefix %s", prefix)

    def get_ignored_prefixes(self) -> Set[str]:
        return set(self._ignored)

    def get_rejection_stats(self) -> RejectionStats:
        s = self._stats
        return RejectionStats(s.lc, s.good_lc, s.odom_consistent_lc, s.multirobot_lc,
                              s.good_multirobot_lc, s.landmark_measurements,
                              s.good_landmark_measurements, list(s.consistency_error))

    def save_data(self, folder_path: str) -> None:
        """Write one row per loop closure still tracked to loop_closures.csv."""
        path = os.path.join(folder_path, "loop_closures.csv")
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(["key1", "key2", "robots", "odom_consistent", "accepted", "ignored"])
            for obs_id, group in self._loop_closures.items():
                for seq, m in group.members.items():
                    k1, k2 = factor_keys(m.factor)
                    writer.writerow([key_label(k1), key_label(k2), str(obs_id),
                                     int(bool(m.odom_consistent)), int(seq in group.accepted),
                                     int(self._ignored_closure(m))])
        if not self._quiet:
            logger.info("Loop closure report written to %s", path)


class Pcm(PcmBase):
    """Squared Mahalanobis norm of the residual against odometry / pairwise bounds."""

    def __init__(self, odom_threshold: float, lc_threshold: float,
                 special_symbols: Iterable[str] = ()):
        super().__init__(special_symbols)
        self.odom_threshold = float(odom_threshold)
        self.lc_threshold = float(lc_threshold)

    def _gate(self, residual, cov: np.ndarray, threshold: float) -> bool:
        r = self._log(residual)
        try:
            d2 = float(r @ np.linalg.solve(cov, r))
        except np.linalg.LinAlgError:
            d2 = float("inf")
        self._stats.consistency_error.append(d2)
        return d2 < threshold

    def _check_odometry(self, residual, cov: np.ndarray) -> bool:
        return self._gate(residual, cov, self.odom_threshold)

    def _check_pairwise(self, residual, cov: np.ndarray) -> bool:
        return self._gate(residual, cov, self.lc_threshold)


class PcmSimple(PcmBase):
    """Residual translation norm and rotation angle against metric bounds; covariances unused."""

    def __init__(self, trans_threshold: float, rot_threshold: float,
                 special_symbols: Iterable[str] = ()):
        super().__init__(special_symbols)
        self.trans_threshold = float(trans_threshold)
        self.rot_threshold = float(rot_threshold)

    def _within_bounds(self, residual) -> bool:
        trans = self._translation_norm(residual)
        self._stats.consistency_error.append(trans)
        return trans < self.trans_threshold and self._rotation_angle(residual) < self.rot_threshold

    def _check_odometry(self, residual, cov: np.ndarray) -> bool:
        return self._within_bounds(residual)

    def _check_pairwise(self, residual, cov: np.ndarray) -> bool:
        return self._within_bounds(residual)


class _Planar:
    pose_name = "Pose2"
    dim = 3

    def _rotation_angle(self, pose) -> float:
        return abs(float(pose.theta()))


class _Spatial:
    pose_name = "Pose3"
    dim = 6

    def _rotation_angle(self, pose) -> float:
        return float(np.linalg.norm(np.asarray(gtsam.Rot3.Logmap(pose.rotation()), dtype=float)))


class Pcm2D(_Planar, Pcm):
    pass


class Pcm3D(_Spatial, Pcm):
    pass


class PcmSimple2D(_Planar, PcmSimple):
    pass


class PcmSimple3D(_Spatial, PcmSimple):
    pass
