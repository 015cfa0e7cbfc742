# hilbert.py
# Subsystem spaces. They only validate operator construction and fix the
# order in which operators on different subsystems are written.

from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple, Union

from .errors import InvalidOperator


@dataclass(frozen=True)
class FockSpace:
    """Single bosonic mode."""
    name: str

    def __mul__(self, other):
        return ProductSpace(self, other)


@dataclass(frozen=True)
class NLevelSpace:
    """
    N-level system. `levels` is either the number of levels (labels 1..n)
    or an explicit tuple of labels. `ground` is eliminated through
    sigma(g,g) = 1 - sum_{k != g} sigma(k,k).
    """
    name: str
    levels: Union[int, Tuple] = 2
    ground: object = 1

    def __post_init__(self):
        if isinstance(self.levels, int):
            if self.levels < 2:
                raise InvalidOperator("an N-level space needs at least two levels", self)
            object.__setattr__(self, "levels", tuple(range(1, self.levels + 1)))
        else:
            object.__setattr__(self, "levels", tuple(self.levels))
        if self.ground not in self.levels:
            raise InvalidOperator(f"ground state {self.ground!r} is not a level", self)

    def level_position(self, level) -> int:
        try:
            return self.levels.index(level)
        except ValueError:
            raise InvalidOperator(f"level {level!r} not in {self.name}", self) from None

    def __mul__(self, other):
        return ProductSpace(self, other)


@dataclass(frozen=True)
class ProductSpace:
    """Ordered composite of subsystem spaces; position = 'acts on' (aon)."""
    spaces: Tuple

    def __init__(self, *spaces):
        flat = []
        for s in spaces:
            if isinstance(s, ProductSpace):
                flat.extend(s.spaces)
            elif isinstance(s, (FockSpace, NLevelSpace)):
                flat.append(s)
            else:
                raise TypeError(f"not a Hilbert space: {s!r}")
        object.__setattr__(self, "spaces", tuple(flat))

    def __mul__(self, other):
        return ProductSpace(self, other)

    def __len__(self):
        return len(self.spaces)

    def index_of(self, space) -> int:
        """Position of a subsystem given as a space or an integer position."""
        if isinstance(space, int):
            if 0 <= space < len(self.spaces):
                return space
            raise InvalidOperator(f"no subsystem at position {space}", self)
        matches = [k for k, s in enumerate(self.spaces) if s == space]
        if not matches:
            raise InvalidOperator("undeclared subsystem", space)
        if len(matches) > 1:
            raise InvalidOperator("subsystem is ambiguous, give its position", space)
        return matches[0]


def subspace(h, aon):
    """Return (subspace, position) for `aon` in `h`; `aon=None` for single spaces."""
    if isinstance(h, ProductSpace):
        if aon is None:
            raise InvalidOperator("operator on a product space needs `aon`", h)
        pos = h.index_of(aon)
        return h.spaces[pos], pos
    if isinstance(h, (FockSpace, NLevelSpace)):
        if aon not in (None, 0, h):
            raise InvalidOperator("undeclared subsystem", aon)
        return h, 0
    raise TypeError(f"not a Hilbert space: {h!r}")
