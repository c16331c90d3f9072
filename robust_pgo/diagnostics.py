"""Running diagnostics logs written next to the solver output.

<path>/log.txt   header + one row per logged update (8 numeric columns)
<path>/error.txt header + one row per logged update (consistency errors)

Files are opened per append and closed before returning; nothing is held
between calls. A crash mid-write can leave a partial last line.
"""
from __future__ import annotations

import logging
import os
from typing import Iterable

from .models import RejectionStats

logger = logging.getLogger("robust_pgo.diagnostics")

LOG_HEADER = ("#lc #good-lc #odom-consistent-lc #multirobot-lc #good-multirobot-lc "
              "#ldmrk-measurements #good-ldmrk-measurements #error")
ERROR_HEADER = "#consistency-error"


def _fmt(value: float) -> str:
    return f"{value:g}"


class DiagnosticsLog:
    def __init__(self, path: str):
        self.path = path
        self.log_file = os.path.join(path, "log.txt")
        self.error_file = os.path.join(path, "error.txt")

    def initialize(self) -> None:
        """Truncate both files and write their header lines."""
        os.makedirs(self.path, exist_ok=True)
        with open(self.log_file, "w", encoding="utf-8") as fh:
            fh.write(LOG_HEADER + "\n")
        with open(self.error_file, "w", encoding="utf-8") as fh:
            fh.write(ERROR_HEADER + "\n")
        logger.debug("Diagnostics logs initialised in %s", self.path)

    def append(self, stats: RejectionStats, error: float) -> None:
        row = [str(int(v)) for v in stats.as_row()] + [_fmt(float(error))]
        with open(self.log_file, "a", encoding="utf-8") as fh:
            fh.write(" ".join(row) + "\n")
        self.append_errors(stats.consistency_error)

    def append_errors(self, errors: Iterable[float]) -> None:
        with open(self.error_file, "a", encoding="utf-8") as fh:
            fh.write(" ".join(_fmt(float(e)) for e in errors) + "\n")
