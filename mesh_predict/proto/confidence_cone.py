"""
Confidence Cone Output Schema.

Widening uncertainty envelope around a predicted path, ready for rendering.
The three point sequences have the same length; index 0 is the last known
position and the final index is the predicted position.
"""

from dataclasses import dataclass
from typing import Tuple

LatLon = Tuple[float, float]


@dataclass(frozen=True)
class ConfidenceCone:
    """
    Geometric uncertainty envelope.

    Attributes:
        center_line: Path from last known position to predicted position
        left_boundary: Points offset left of the center line
        right_boundary: Points offset right of the center line
        half_widths: Half-width (m) at each center line point, non-decreasing
        confidence_level: Probability mass the envelope is meant to cover
        max_distance: Distance (m) from apex to the final center line point
    """

    center_line: Tuple[LatLon, ...]
    left_boundary: Tuple[LatLon, ...]
    right_boundary: Tuple[LatLon, ...]
    half_widths: Tuple[float, ...]
    confidence_level: float
    max_distance: float

    def __post_init__(self):
        n = len(self.center_line)
        if len(self.left_boundary) != n or len(self.right_boundary) != n or len(self.half_widths) != n:
            raise ValueError(
                f"Cone sequences must have equal length: center={n}, left={len(self.left_boundary)}, "
                f"right={len(self.right_boundary)}, widths={len(self.half_widths)}"
            )
        if not 0.0 <= self.confidence_level <= 1.0:
            raise ValueError(f"Confidence level must be in [0,1]: {self.confidence_level}")

    @property
    def is_empty(self) -> bool:
        return len(self.center_line) == 0

    def polygon(self) -> Tuple[LatLon, ...]:
        """Closed outline: left boundary out, right boundary back."""
        return tuple(self.left_boundary) + tuple(reversed(self.right_boundary))

    @classmethod
    def empty(cls) -> 'ConfidenceCone':
        return cls((), (), (), (), 0.0, 0.0)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'center_line': [list(p) for p in self.center_line],
            'left_boundary': [list(p) for p in self.left_boundary],
            'right_boundary': [list(p) for p in self.right_boundary],
            'half_widths': list(self.half_widths),
            'confidence_level': self.confidence_level,
            'max_distance': self.max_distance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ConfidenceCone':
        def points(key):
            return tuple((float(p[0]), float(p[1])) for p in data.get(key, ()))

        return cls(
            center_line=points('center_line'),
            left_boundary=points('left_boundary'),
            right_boundary=points('right_boundary'),
            half_widths=tuple(float(w) for w in data.get('half_widths', ())),
            confidence_level=float(data.get('confidence_level', 0.0)),
            max_distance=float(data.get('max_distance', 0.0)),
        )
