import pytest

from vue_class_language_server.position import LineIndex, PositionMap


def test_breakpoints_round_trip():
    pm = PositionMap([10, 20], [100, 130])
    assert pm.position_at_target(10) == 100
    assert pm.position_at_target(20) == 130
    assert pm.position_at_source(100) == 10
    assert pm.position_at_source(130) == 20


def test_offsets_between_breakpoints_are_extrapolated():
    pm = PositionMap([10, 20], [100, 130])
    assert pm.position_at_target(15) == 105
    assert pm.position_at_target(25) == 135
    assert pm.position_at_source(131) == 21


def test_offset_before_first_breakpoint_uses_first():
    pm = PositionMap([10, 20], [100, 130])
    assert pm.position_at_target(5) == 95
    assert pm.position_at_source(90) == 0


def test_empty_map_is_identity():
    pm = PositionMap([], [])
    assert len(pm) == 0
    assert pm.position_at_source(42) == 42
    assert pm.position_at_target(7) == 7


def test_length_mismatch_raises():
    with pytest.raises(ValueError):
        PositionMap([1, 2], [1])


def test_line_index_conversions():
    index = LineIndex("ab\ncd\n")
    assert index.offset_at(1, 1) == 4
    assert index.position_at(4) == (1, 1)
    assert index.position_at(6) == (2, 0)


def test_line_index_clamps():
    index = LineIndex("ab\ncd\n")
    # Character past the end of a line stops before its newline
    assert index.offset_at(0, 10) == 2
    assert index.offset_at(5, 0) == 6
    assert index.offset_at(-1, 3) == 0
    assert index.position_at(100) == (2, 0)
    assert index.position_at(-3) == (0, 0)


def test_reordered_pairs_translate_both_ways():
    # Content compiled out of source order
    pm = PositionMap([30, 10], [100, 120])
    assert pm.position_at_target(10) == 120
    assert pm.position_at_target(30) == 100
    assert pm.position_at_source(100) == 30
    assert pm.position_at_source(120) == 10
    assert pm.position_at_source(105) == 35
