"""Exception types raised by the robust_pgo back-end."""


class RobustPgoError(RuntimeError):
    """Base class for robust_pgo failures."""


class ConfigurationError(RobustPgoError):
    """Raised for an unrecognised outlier-removal method or solver.

    A solver is never constructed after this is raised; callers should
    validate parameters before deployment.
    """


class BatchSourceError(RobustPgoError):
    """Raised when a measurement source cannot be read."""
