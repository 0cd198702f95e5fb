"""Phase paths: positions in the phase tree.

Phases nest (a phase can run sub-phases), so a target's position is the path
of phase names from the root, e.g. ``PhasePath(("configure", "restart"))``.
Barrier cohorts are defined over this tree: targets whose paths share a
parent are siblings.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class PhasePath:
    """Ordered, immutable sequence of phase-name segments."""

    segments: tuple[str, ...] = ()

    @classmethod
    def root(cls) -> "PhasePath":
        return cls(())

    @classmethod
    def of(cls, *segments: str) -> "PhasePath":
        return cls(tuple(segments))

    @classmethod
    def from_iterable(cls, segments: Iterable[str]) -> "PhasePath":
        return cls(tuple(segments))

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def leaf(self) -> str | None:
        """Innermost phase name, or None at the root."""
        return self.segments[-1] if self.segments else None

    @property
    def parent(self) -> "PhasePath":
        """Path with the last segment removed.

        Raises:
            ValueError: at the root, which has no parent.
        """
        if not self.segments:
            raise ValueError("The root phase path has no parent")
        return PhasePath(self.segments[:-1])

    def child(self, name: str) -> "PhasePath":
        return PhasePath(self.segments + (name,))

    def is_prefix_of(self, other: "PhasePath") -> bool:
        """True when ``other`` is this path or lies in its subtree."""
        return other.segments[: len(self.segments)] == self.segments

    def __str__(self) -> str:
        return "/" + "/".join(self.segments)
