"""Outlier-rejection strategies for the robust solver.

Every strategy implements OutlierRemoval; `make_outlier_removal` picks one
from RobustSolverParams once, at solver construction.
"""
from typing import Callable, Dict, Optional

from robust_pgo.errors import ConfigurationError
from robust_pgo.params import OutlierRemovalMethod, RobustSolverParams

from .base import OutlierRemoval
from .pcm import Pcm, PcmBase, Pcm2D, Pcm3D, PcmSimple, PcmSimple2D, PcmSimple3D

_FACTORIES: Dict[OutlierRemovalMethod, Callable[[RobustSolverParams], OutlierRemoval]] = {
    OutlierRemovalMethod.PCM2D: lambda p: Pcm2D(
        p.pcm_odom_threshold, p.pcm_lc_threshold, p.special_symbols),
    OutlierRemovalMethod.PCM3D: lambda p: Pcm3D(
        p.pcm_odom_threshold, p.pcm_lc_threshold, p.special_symbols),
    OutlierRemovalMethod.PCM_SIMPLE2D: lambda p: PcmSimple2D(
        p.pcm_dist_trans_threshold, p.pcm_dist_rot_threshold, p.special_symbols),
    OutlierRemovalMethod.PCM_SIMPLE3D: lambda p: PcmSimple3D(
        p.pcm_dist_trans_threshold, p.pcm_dist_rot_threshold, p.special_symbols),
}


def make_outlier_removal(params: RobustSolverParams) -> Optional[OutlierRemoval]:
    """Return the configured strategy, or None for OutlierRemovalMethod.NONE."""
    method = params.outlier_removal_method
    if method == OutlierRemovalMethod.NONE:
        return None
    factory = _FACTORIES.get(method)
    if factory is None:
        raise ConfigurationError(f"Undefined outlier removal method: {method!r}")
    return factory(params)


__all__ = [
    "OutlierRemoval",
    "Pcm",
    "PcmBase",
    "Pcm2D",
    "Pcm3D",
    "PcmSimple",
    "PcmSimple2D",
    "PcmSimple3D",
    "make_outlier_removal",
]
