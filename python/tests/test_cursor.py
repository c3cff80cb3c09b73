"""
Tests for cursor projection
"""

import asyncio
from datetime import datetime, timezone as dt_timezone

import pytest

from coedit.cursor import (
    CARET_INSET,
    CursorPosition,
    CursorProjection,
    Edges,
    FontSpec,
    PillowTextMeasurer,
    TargetBox,
    project_cursor,
    wrap_segment,
)
from coedit.records import PresenceRecord


class FixedWidthMeasurer:
    """Every character is ``char_width`` pixels wide."""

    def __init__(self, char_width=10.0):
        self.char_width = char_width
        self.calls = []

    def measure(self, text, font, letter_spacing=0.0):
        self.calls.append(text)
        return len(text) * (self.char_width + letter_spacing)


def make_box(**overrides):
    values = dict(
        top=100.0,
        left=40.0,
        width=400.0,
        height=200.0,
        font=FontSpec("monospace", 14),
        padding=Edges.uniform(8),
        line_height=20.0,
    )
    values.update(overrides)
    return TargetBox(**values)


def make_record(cursor=0, user_id="alice"):
    return PresenceRecord(
        document_id=7,
        user_id=user_id,
        field_name="summary",
        cursor_position=cursor,
        last_seen=datetime(2024, 5, 1, tzinfo=dt_timezone.utc),
    )


class TestProjectCursor:
    def test_empty_text_returns_padded_corner(self):
        box = make_box(scroll_top=5, scroll_left=3)

        position = project_cursor("", 0, box, measurer=FixedWidthMeasurer())

        assert position == CursorPosition(top=100 + 8 + CARET_INSET - 5, left=40 + 8 - 3)

    def test_first_line(self):
        position = project_cursor("hello", 3, make_box(), measurer=FixedWidthMeasurer())

        assert position == CursorPosition(top=110.0, left=78.0)

    def test_second_line_measures_last_segment(self):
        measurer = FixedWidthMeasurer()

        position = project_cursor("ab\ncd", 4, make_box(), measurer=measurer)

        # line index 1, offset after "c"
        assert position.top == 100 + 8 + 20 + CARET_INSET
        assert position.left == 40 + 8 + 10
        assert measurer.calls[-1] == "c"

    def test_cursor_at_end_of_second_line(self):
        measurer = FixedWidthMeasurer()

        position = project_cursor("ab\ncd", 5, make_box(), measurer=measurer)

        assert position.top == 130.0
        assert position.left == 68.0
        assert measurer.calls[-1] == "cd"

    def test_cursor_right_after_newline(self):
        position = project_cursor("ab\ncd", 3, make_box(), measurer=FixedWidthMeasurer())

        assert position == CursorPosition(top=130.0, left=48.0)

    def test_offset_beyond_text_is_clamped_to_length(self):
        measurer = FixedWidthMeasurer()

        beyond = project_cursor("abc", 99, make_box(), measurer=measurer)
        at_end = project_cursor("abc", 3, make_box(), measurer=measurer)

        assert beyond == at_end

    def test_negative_offset_treated_as_start(self):
        position = project_cursor("abc", -4, make_box(), measurer=FixedWidthMeasurer())

        assert position == CursorPosition(top=110.0, left=48.0)

    def test_scroll_offsets_shift_position(self):
        box = make_box(scroll_top=20, scroll_left=5)

        position = project_cursor("ab\ncd", 5, box, measurer=FixedWidthMeasurer())

        assert position == CursorPosition(top=110.0, left=63.0)

    def test_letter_spacing_is_measured(self):
        box = make_box(letter_spacing=2)

        position = project_cursor("abc", 3, box, measurer=FixedWidthMeasurer())

        assert position.left == 40 + 8 + 3 * 12

    def test_vertical_clamp_at_bottom(self):
        text = "\n" * 50 + "x"

        position = project_cursor(text, len(text), make_box(), measurer=FixedWidthMeasurer())

        assert position.top == 100 + 200 - 20

    def test_vertical_clamp_respects_scroll(self):
        text = "\n" * 50
        box = make_box(scroll_top=40)

        position = project_cursor(text + "x", 51, box, measurer=FixedWidthMeasurer())

        assert position.top == 100 + 200 - 40 - 20

    def test_box_shorter_than_a_line_pins_to_top(self):
        box = make_box(height=10, scroll_top=4)

        position = project_cursor("abc", 1, box, measurer=FixedWidthMeasurer())

        assert position.top == 100 - 4

    def test_horizontal_clamp(self):
        text = "x" * 100

        position = project_cursor(text, 100, make_box(), measurer=FixedWidthMeasurer())

        assert position.left == 40 + 400

    def test_normal_line_height_from_font_size(self):
        box = make_box(line_height=None, font=FontSpec("monospace", 10))

        position = project_cursor("a\nb", 3, box, measurer=FixedWidthMeasurer())

        assert position.top == pytest.approx(100 + 8 + 12 + CARET_INSET)

    def test_hard_breaks_only_by_default(self):
        box = make_box(width=56)  # 40px of content, four characters
        text = "abcdefghij"

        position = project_cursor(text, 10, box, measurer=FixedWidthMeasurer(), soft_wrap=False)

        assert position.top == 110.0

    def test_soft_wrap_counts_wrapped_lines(self):
        box = make_box(width=56)
        text = "abcdefghij"

        position = project_cursor(text, 10, box, measurer=FixedWidthMeasurer(), soft_wrap=True)

        # abcd / efgh / ij
        assert position.top == 100 + 8 + 2 * 20 + CARET_INSET
        assert position.left == 40 + 8 + 20


class TestWrapSegment:
    def test_short_line_is_not_wrapped(self):
        assert wrap_segment("one two", make_box(), FixedWidthMeasurer()) == ["one two"]

    def test_wraps_on_word_boundaries(self):
        box = make_box(width=96)  # 80px of content

        lines = wrap_segment("one two three", box, FixedWidthMeasurer())

        assert lines == ["one two ", "three"]

    def test_long_word_breaks_between_characters(self):
        box = make_box(width=46)  # 30px of content

        assert wrap_segment("abcdefg", box, FixedWidthMeasurer()) == ["abc", "def", "g"]

    def test_border_reduces_content_width(self):
        box = make_box(width=66, border=Edges.uniform(5))  # 40px of content

        assert wrap_segment("abcdef", box, FixedWidthMeasurer()) == ["abcd", "ef"]

    def test_empty_segment(self):
        assert wrap_segment("", make_box(), FixedWidthMeasurer()) == [""]


class TestPillowTextMeasurer:
    def test_width_grows_with_text(self):
        measurer = PillowTextMeasurer()
        font = FontSpec("sans-serif", 14)

        short = measurer.measure("ab", font)
        longer = measurer.measure("abcdef", font)

        assert 0 < short < longer

    def test_empty_text_has_no_width(self):
        assert PillowTextMeasurer().measure("", FontSpec()) == 0.0

    def test_letter_spacing_added_per_character(self):
        measurer = PillowTextMeasurer()
        font = FontSpec("sans-serif", 14)

        plain = measurer.measure("abcd", font)
        spaced = measurer.measure("abcd", font, letter_spacing=1.5)

        assert spaced == pytest.approx(plain + 6)

    def test_unknown_family_falls_back(self):
        measurer = PillowTextMeasurer()

        assert measurer.measure("abc", FontSpec("No Such Font, serif", 12)) > 0

    def test_fonts_are_cached(self):
        measurer = PillowTextMeasurer()
        font = FontSpec("sans-serif", 14)

        measurer.measure("a", font)
        measurer.measure("b", font)

        assert len(measurer._fonts) == 1

    def test_bold_weights(self):
        assert FontSpec(weight="bold").is_bold
        assert FontSpec(weight=700).is_bold
        assert FontSpec(weight="600").is_bold
        assert not FontSpec(weight="normal").is_bold
        assert not FontSpec(weight=400).is_bold


class TestCursorProjection:
    def test_track_computes_position(self):
        moves = []
        projection = CursorProjection(make_box, moves.append, measurer=FixedWidthMeasurer())

        projection.track(make_record(cursor=2), "hello")

        assert moves == [CursorPosition(top=110.0, left=68.0)]

    def test_no_callback_when_position_unchanged(self):
        moves = []
        projection = CursorProjection(make_box, moves.append, measurer=FixedWidthMeasurer())
        record = make_record(cursor=2)

        projection.track(record, "hello")
        projection.track(record, "hello")
        projection.recompute()

        assert len(moves) == 1

    def test_cursor_change_triggers_recompute(self):
        moves = []
        projection = CursorProjection(make_box, moves.append, measurer=FixedWidthMeasurer())

        projection.track(make_record(cursor=2), "hello")
        projection.track(make_record(cursor=4), "hello")

        assert [m.left for m in moves] == [68.0, 88.0]

    def test_box_provider_change_triggers_recompute(self):
        moves = []
        projection = CursorProjection(make_box, moves.append, measurer=FixedWidthMeasurer())
        projection.track(make_record(cursor=1), "hello")

        projection.set_box_provider(lambda: make_box(left=140.0))

        assert [m.left for m in moves] == [58.0, 158.0]

    def test_missing_box_or_record_skips(self):
        moves = []
        projection = CursorProjection(lambda: None, moves.append, measurer=FixedWidthMeasurer())

        projection.track(make_record(cursor=1), "hello")
        assert projection.recompute() is None

        projection.set_box_provider(make_box)
        projection.track(None)
        assert projection.recompute() is None
        assert len(moves) == 1

    def test_on_move_errors_are_logged(self, caplog):
        def broken(position):
            raise RuntimeError("overlay gone")

        projection = CursorProjection(make_box, broken, measurer=FixedWidthMeasurer())

        projection.track(make_record(cursor=1), "hello")

        assert "Error in cursor on_move" in caplog.text


@pytest.mark.asyncio
class TestCursorProjectionTimer:
    async def test_timer_picks_up_layout_changes(self):
        layout = {"box": make_box()}
        moves = []
        projection = CursorProjection(
            lambda: layout["box"], moves.append, measurer=FixedWidthMeasurer(), interval=0.01
        )
        projection.track(make_record(cursor=1), "hello")
        projection.start()

        layout["box"] = make_box(top=300.0)
        await asyncio.sleep(0.05)
        await projection.stop()

        assert moves[-1].top == 310.0
        assert not projection.running

    async def test_stop_cancels_timer(self):
        projection = CursorProjection(make_box, lambda p: None, interval=0.01)
        projection.start()
        assert projection.running

        await projection.stop()
        await projection.stop()

        assert not projection.running

    async def test_start_is_idempotent(self):
        projection = CursorProjection(make_box, lambda p: None, interval=0.01)
        projection.start()
        task = projection._task

        projection.start()

        assert projection._task is task
        await projection.stop()
