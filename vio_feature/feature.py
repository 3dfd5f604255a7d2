"""Feature record shared between the tracker, the filter and triangulation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np


def _as_observation(uv) -> np.ndarray:
    uv = np.array(uv, dtype=np.float64).reshape(-1)
    if uv.shape != (2,) or not np.all(np.isfinite(uv)):
        raise ValueError(f"observation must be a finite 2-vector (u, v), got {uv!r}")
    return uv


@dataclass(eq=False)
class Feature:
    """
    One tracked feature.

    observations maps camera frame id -> normalized (u, v). position stays
    None until the first triangulation writes it; is_valid is the only
    signal callers should trust before using position.
    """

    id: int
    observations: Dict[int, np.ndarray] = field(default_factory=dict)
    position: Optional[np.ndarray] = None
    is_valid: bool = False

    def __post_init__(self):
        self.observations = {int(k): _as_observation(v) for k, v in self.observations.items()}
        if self.position is not None:
            self.position = np.array(self.position, dtype=np.float64).reshape(3)

    def add_observation(self, frame_id: int, uv) -> None:
        self.observations[int(frame_id)] = _as_observation(uv)

    def remove_observations(self, frame_ids: Iterable[int]) -> None:
        for frame_id in frame_ids:
            self.observations.pop(frame_id, None)

    def sorted_observations(self) -> List[Tuple[int, np.ndarray]]:
        return sorted(self.observations.items(), key=lambda item: item[0])

    def usable_observations(self, poses: Mapping) -> Tuple[List[int], List[int]]:
        """
        Split observed frame ids by pose availability.

        Returns:
            (usable, skipped), both in ascending frame id
        """
        usable, skipped = [], []
        for frame_id, _ in self.sorted_observations():
            if frame_id in poses:
                usable.append(frame_id)
            else:
                skipped.append(frame_id)
        return usable, skipped
