from bisect import bisect_right
from typing import List, Sequence, Tuple


class PositionMap:
    """Translates offsets between a source text and the text compiled from it.

    ``source[i]`` is the offset in the original document where the compiled
    content at ``target[i]`` begins. Pairs are normally non-decreasing in both
    sequences; when compilation reorders content, each direction looks up its
    own sorted view of the pairs. Offsets between breakpoints are interpolated
    linearly from the nearest breakpoint at or before them, so offsets inside
    injected punctuation map approximately.
    """

    def __init__(self, source: Sequence[int], target: Sequence[int]):
        if len(source) != len(target):
            raise ValueError(
                "PositionMap: the length of `source` must be equal to the length of `target`"
            )
        self.source: Tuple[int, ...] = tuple(source)
        self.target: Tuple[int, ...] = tuple(target)
        self._forward = _sorted_points(self.source, self.target)
        self._backward = _sorted_points(self.target, self.source)

    def __len__(self) -> int:
        return len(self.source)

    def __repr__(self) -> str:
        return f"PositionMap(source={list(self.source)}, target={list(self.target)})"

    def position_at_source(self, offset: int) -> int:
        """Map a compiled (target) offset back to the original (source) offset."""
        return self._translate(offset, *self._backward)

    def position_at_target(self, offset: int) -> int:
        """Map an original (source) offset forward to the compiled (target) offset."""
        return self._translate(offset, *self._forward)

    @staticmethod
    def _translate(
        offset: int, from_points: Tuple[int, ...], to_points: Tuple[int, ...]
    ) -> int:
        if not from_points:
            return offset
        # Greatest breakpoint at or before offset; clamp to the first one otherwise
        i = max(bisect_right(from_points, offset) - 1, 0)
        return to_points[i] + (offset - from_points[i])


def _sorted_points(
    keys: Tuple[int, ...], values: Tuple[int, ...]
) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    pairs = sorted(zip(keys, values))
    return tuple(key for key, _ in pairs), tuple(value for _, value in pairs)


class LineIndex:
    """Converts between absolute offsets and (line, character) positions."""

    def __init__(self, text: str):
        self.text = text
        self._line_offsets = self._compute_line_offsets(text)

    def _compute_line_offsets(self, text: str) -> List[int]:
        offsets = [0]
        for i, char in enumerate(text):
            if char == "\n":
                offsets.append(i + 1)
        return offsets

    def offset_at(self, line: int, character: int) -> int:
        if line < 0:
            return 0
        if line >= len(self._line_offsets):
            return len(self.text)
        line_start = self._line_offsets[line]
        if line + 1 < len(self._line_offsets):
            # Don't run past the newline that ends this line
            line_end = self._line_offsets[line + 1] - 1
        else:
            line_end = len(self.text)
        return max(min(line_start + character, line_end), line_start)

    def position_at(self, offset: int) -> Tuple[int, int]:
        offset = max(min(offset, len(self.text)), 0)
        line = bisect_right(self._line_offsets, offset) - 1
        return line, offset - self._line_offsets[line]
