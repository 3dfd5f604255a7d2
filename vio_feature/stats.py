"""Triangulation outcome counters, owned by the caller (no module-level state)."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Dict


@dataclass
class TriangulationStats:
    """Per-reason counters for triangulation attempts."""

    total_attempt: int = 0
    success: int = 0
    fail_few_obs: int = 0
    missing_pose: int = 0
    fail_motion: int = 0
    fail_parallax: int = 0
    fail_depth_sign: int = 0
    fail_reproj_error: int = 0
    non_converged: int = 0
    degenerate_guess: int = 0

    def record(self, report) -> None:
        """Tally one TriangulationReport."""
        self.total_attempt += 1
        self.missing_pose += len(report.skipped_frames)
        if report.is_valid:
            self.success += 1
        if report.status == "INSUFFICIENT_OBSERVATIONS":
            self.fail_few_obs += 1
            return
        if report.degenerate_guess:
            self.degenerate_guess += 1
        if not report.converged:
            self.non_converged += 1
        for reason in report.gate_failures:
            setattr(self, reason, getattr(self, reason) + 1)

    def merge(self, other: "TriangulationStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, 0)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    def print_stats(self) -> None:
        """Print triangulation statistics."""
        total = self.total_attempt
        if total == 0:
            print("[TRI-STATS] No triangulation attempts")
            return

        print(f"[TRI-STATS] Total: {total}, Success: {self.success} ({100*self.success/total:.1f}%)")
        for key, val in self.as_dict().items():
            if key in ('total_attempt', 'success') or val == 0:
                continue
            print(f"  {key}: {val} ({100*val/total:.1f}%)")
