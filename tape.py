from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

import numpy as np
from numpy.typing import NDArray


BLANK = " "
CELL_DTYPE = "<U1"


def _cells(text: str) -> NDArray[Any]:
    return np.array(list(text), dtype=CELL_DTYPE) if text else np.empty(0, dtype=CELL_DTYPE)


@dataclass(frozen=True, eq=False)
class Tape:
    """Immutable tape value.

    ``cells[0]`` sits at position ``origin``; every position outside the stored
    cells reads as ``BLANK``. Moving the head never touches the cells, and
    writing returns a new tape whose cells are extended (in either direction)
    just far enough to hold the written position. Positions may be negative.
    """

    cells: NDArray[Any]
    origin: int = 0
    head: int = 0

    @classmethod
    def from_string(cls, text: str, head: int = 0) -> "Tape":
        return cls(cells=_cells(text), origin=0, head=head)

    @classmethod
    def blank(cls) -> "Tape":
        return cls.from_string("")

    def read(self, position: Optional[int] = None) -> str:
        index = (self.head if position is None else position) - self.origin
        if 0 <= index < len(self.cells):
            return str(self.cells[index])
        return BLANK

    def write(self, symbol: str) -> "Tape":
        if len(symbol) != 1:
            raise ValueError(f"Tape cells hold exactly one symbol, got {symbol!r}")
        cells = self.cells
        origin = self.origin
        index = self.head - origin
        if index < 0:
            cells = np.concatenate([np.full(-index, BLANK, dtype=CELL_DTYPE), cells])
            origin = self.head
            index = 0
        elif index >= len(cells):
            cells = np.concatenate([cells, np.full(index - len(cells) + 1, BLANK, dtype=CELL_DTYPE)])
        else:
            cells = cells.copy()
        cells[index] = symbol
        return Tape(cells=cells, origin=origin, head=self.head)

    def move(self, offset: int) -> "Tape":
        return replace(self, head=self.head + offset)

    def left(self) -> "Tape":
        return self.move(-1)

    def right(self) -> "Tape":
        return self.move(1)

    def span(self) -> Tuple[int, str]:
        """Returns (start position, symbols) of the written region with blank padding trimmed."""
        written = np.flatnonzero(self.cells != BLANK)
        if written.size == 0:
            return 0, ""
        first, last = int(written[0]), int(written[-1])
        return self.origin + first, "".join(self.cells[first:last + 1].tolist())

    @property
    def contents(self) -> str:
        return "".join(self.cells.tolist())

    def render(self, margin: int = 2) -> Tuple[str, int]:
        """Returns the written region (plus ``margin`` blanks each side, always covering the head)
        and the column of the head within it.
        """
        start, text = self.span()
        end = start + len(text)
        low = min(start, self.head) - margin
        high = max(end, self.head + 1) + margin
        return "".join(self.read(position) for position in range(low, high)), self.head - low

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tape):
            return NotImplemented
        return self.head == other.head and self.span() == other.span()

    def __hash__(self) -> int:
        return hash((self.head, self.span()))

    def __repr__(self) -> str:
        start, text = self.span()
        return f"Tape({text!r}, start={start}, head={self.head})"
