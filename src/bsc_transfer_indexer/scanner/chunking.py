"""Bounded chunk-size state for the log scanner."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ChunkSizer:
    """Block-range width that halves on provider range errors and doubles back.

    ``floor <= current <= target`` always holds.
    """

    target: int
    floor: int = 1
    current: int = field(default=0)

    def __post_init__(self) -> None:
        if self.floor < 1:
            raise ValueError("floor must be >= 1")
        if self.target < self.floor:
            raise ValueError("target must be >= floor")
        if self.current == 0:
            self.current = self.target
        self.current = max(self.floor, min(self.target, self.current))

    @property
    def at_floor(self) -> bool:
        return self.current == self.floor

    def shrink(self) -> int:
        self.current = max(self.floor, self.current // 2)
        return self.current

    def grow(self) -> int:
        self.current = min(self.target, self.current * 2)
        return self.current

    def chunk(self, start: int, limit: int) -> tuple[int, int]:
        """Inclusive range starting at ``start``, clipped to ``limit``."""
        return start, min(start + self.current - 1, limit)
