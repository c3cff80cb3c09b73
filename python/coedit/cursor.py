"""
Projection of a remote user's cursor offset into pixel coordinates.

Given the text of a field, a character offset and the layout of the input
that shows the field, ``project_cursor`` returns where a caret overlay should
be drawn::

    box = TargetBox(top=100, left=40, width=400, height=120,
                    font=FontSpec("Inter", 14), padding=Edges.uniform(8))
    project_cursor("ab\\ncd", 4, box)   # second line, after "cd"

Text is measured with a ``TextMeasurer``; the default renders with Pillow.
``CursorProjection`` keeps one overlay up to date, re-reading the layout on a
fixed interval because resizes and reflows are not observable otherwise. The
interval is an approximation, not precise invalidation.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from PIL import ImageFont

from .config import config
from .records import PresenceRecord

logger = logging.getLogger(__name__)

CARET_INSET = 2  # px below the line top where the caret starts
NORMAL_LINE_HEIGHT = 1.2  # CSS "line-height: normal", as a multiple of font size

_GENERIC_FAMILIES = {
    "sans-serif": "DejaVuSans",
    "system-ui": "DejaVuSans",
    "serif": "DejaVuSerif",
    "monospace": "DejaVuSansMono",
}


@dataclass(frozen=True)
class FontSpec:
    family: str = "sans-serif"
    size: float = 14.0
    weight: Union[str, int] = "normal"

    @property
    def is_bold(self) -> bool:
        if isinstance(self.weight, int):
            return self.weight >= 600
        return str(self.weight).lower() in ("bold", "bolder") or (
            str(self.weight).isdigit() and int(self.weight) >= 600
        )


@dataclass(frozen=True)
class Edges:
    top: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    left: float = 0.0

    @classmethod
    def uniform(cls, value: float) -> "Edges":
        return cls(value, value, value, value)


@dataclass(frozen=True)
class TargetBox:
    """
    Layout of the input element the caret is drawn in.

    ``top``/``left``/``width``/``height`` are the element's bounding rectangle,
    which already includes padding and border whatever its box-sizing.
    """

    top: float
    left: float
    width: float
    height: float
    scroll_top: float = 0.0
    scroll_left: float = 0.0
    font: FontSpec = FontSpec()
    letter_spacing: float = 0.0
    padding: Edges = Edges()
    border: Edges = Edges()
    line_height: Optional[float] = None

    @property
    def resolved_line_height(self) -> float:
        if self.line_height is None:
            return self.font.size * NORMAL_LINE_HEIGHT
        return self.line_height

    @property
    def content_width(self) -> float:
        """Width available to text, i.e. where pre-wrap breaks lines."""
        return max(
            0.0,
            self.width - self.padding.left - self.padding.right - self.border.left - self.border.right,
        )


@dataclass(frozen=True)
class CursorPosition:
    top: float
    left: float


class TextMeasurer(Protocol):
    def measure(self, text: str, font: FontSpec, letter_spacing: float = 0.0) -> float:
        """Pixel width of ``text`` rendered on a single line."""
        ...


class PillowTextMeasurer:
    """
    Measures text by laying it out with Pillow's FreeType fonts.

    Font families resolve to ``<family>.ttf`` (``<family>-Bold.ttf`` for bold
    weights) on the font search path; CSS generic families map to DejaVu.
    Unresolvable families fall back to ``default_font_path`` or Pillow's
    built-in default font.
    """

    def __init__(self, default_font_path: Optional[str] = None):
        self.default_font_path = default_font_path or config.get("default_font_path")
        self._fonts: Dict[Tuple[str, float, bool], Any] = {}

    def _candidates(self, font: FontSpec) -> List[str]:
        names = []
        for family in font.family.split(","):
            family = family.strip().strip("'\"")
            if not family:
                continue
            base = _GENERIC_FAMILIES.get(family.lower(), family.replace(" ", ""))
            if font.is_bold:
                names.append(f"{base}-Bold.ttf")
            names.append(f"{base}.ttf")
        if self.default_font_path:
            names.append(self.default_font_path)
        return names

    def _font(self, font: FontSpec):
        key = (font.family, font.size, font.is_bold)
        cached = self._fonts.get(key)
        if cached is not None:
            return cached

        loaded = None
        for name in self._candidates(font):
            try:
                loaded = ImageFont.truetype(name, font.size)
                break
            except OSError:
                continue
        if loaded is None:
            logger.debug("No TrueType font for %r, using Pillow default", font.family)
            loaded = ImageFont.load_default(font.size)
        self._fonts[key] = loaded
        return loaded

    def measure(self, text: str, font: FontSpec, letter_spacing: float = 0.0) -> float:
        if not text:
            return 0.0
        return float(self._font(font).getlength(text)) + letter_spacing * len(text)


_default_measurer: Optional[PillowTextMeasurer] = None


def get_default_measurer() -> PillowTextMeasurer:
    global _default_measurer
    if _default_measurer is None:
        _default_measurer = PillowTextMeasurer()
    return _default_measurer


_WRAP_TOKEN_RE = re.compile(r"\S+\s*|\s+")


def wrap_segment(text: str, box: TargetBox, measurer: TextMeasurer) -> List[str]:
    """
    Break one hard line into the visual lines ``white-space: pre-wrap`` shows.

    Greedy word wrap at the content width; words wider than the box break
    between characters.
    """
    limit = box.content_width
    if not text or limit <= 0:
        return [text]

    def width(value: str) -> float:
        return measurer.measure(value, box.font, box.letter_spacing)

    lines: List[str] = []
    current = ""
    for token in _WRAP_TOKEN_RE.findall(text):
        # Trailing whitespace hangs past the edge in pre-wrap
        if width(current + token.rstrip()) <= limit:
            current += token
            continue
        if current:
            lines.append(current)
            current = ""
        while token.rstrip() and width(token.rstrip()) > limit:
            cut = 1
            while cut < len(token) and width(token[: cut + 1]) <= limit:
                cut += 1
            lines.append(token[:cut])
            token = token[cut:]
        current = token
    lines.append(current)
    return lines


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def project_cursor(
    text: str,
    cursor_offset: int,
    box: TargetBox,
    measurer: Optional[TextMeasurer] = None,
    soft_wrap: Optional[bool] = None,
) -> CursorPosition:
    """
    Compute the on-screen position of a caret at ``cursor_offset`` in ``text``.

    The line index counts hard line breaks only, unless ``soft_wrap`` is set
    (default from config), in which case wrapped lines are counted as well.

    Returns:
        CursorPosition clamped so the caret stays inside the scrolled box
    """
    if not text:
        return CursorPosition(
            top=box.top + box.padding.top + CARET_INSET - box.scroll_top,
            left=box.left + box.padding.left - box.scroll_left,
        )

    if measurer is None:
        measurer = get_default_measurer()
    if soft_wrap is None:
        soft_wrap = config.get("soft_wrap", False)

    offset = max(0, min(cursor_offset, len(text)))
    segments = text[:offset].split("\n")

    if soft_wrap:
        visual_lines: List[str] = []
        for segment in segments:
            visual_lines.extend(wrap_segment(segment, box, measurer))
        line_index = len(visual_lines) - 1
        current_line = visual_lines[-1]
    else:
        line_index = len(segments) - 1
        current_line = segments[-1]

    line_height = box.resolved_line_height
    line_width = measurer.measure(current_line, box.font, box.letter_spacing)

    top = box.top + box.padding.top + line_index * line_height + CARET_INSET - box.scroll_top
    left = box.left + box.padding.left + line_width - box.scroll_left

    return CursorPosition(
        top=_clamp(
            top,
            box.top - box.scroll_top,
            box.top + box.height - box.scroll_top - line_height,
        ),
        left=_clamp(left, box.left - box.scroll_left, box.left + box.width - box.scroll_left),
    )


class CursorProjection:
    """
    Keeps one remote editor's caret overlay positioned.

    Recomputes when the tracked presence record or box provider changes, when
    the cursor offset or field text changes, and every ``interval`` seconds
    while started. ``on_move(position)`` fires only when the position changes.

    Usage:
        projection = CursorProjection(read_layout, overlay.move_to)
        projection.start()
        projection.track(record, field_text)   # on every roster change
        ...
        await projection.stop()                # on teardown
    """

    def __init__(
        self,
        box_provider: Callable[[], Optional[TargetBox]],
        on_move: Callable[[CursorPosition], Any],
        measurer: Optional[TextMeasurer] = None,
        interval: Optional[float] = None,
        soft_wrap: Optional[bool] = None,
    ):
        self._box_provider = box_provider
        self._on_move = on_move
        self._measurer = measurer
        self._soft_wrap = soft_wrap
        self.interval = interval if interval is not None else float(config.get("projection_interval", 0.1))
        self._record: Optional[PresenceRecord] = None
        self._text = ""
        self._task: Optional[asyncio.Task] = None
        self.position: Optional[CursorPosition] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, record: Optional[PresenceRecord], text: str = "") -> None:
        """Follow ``record``'s cursor in ``text``; recompute if anything differs."""
        previous = self._record
        changed = (
            record is not previous
            or text != self._text
            or (record is not None and record.cursor_position != previous.cursor_position)
        )
        self._record = record
        self._text = text
        if changed:
            self.recompute()

    def set_box_provider(self, box_provider: Callable[[], Optional[TargetBox]]) -> None:
        if box_provider is not self._box_provider:
            self._box_provider = box_provider
            self.recompute()

    def recompute(self) -> Optional[CursorPosition]:
        if self._record is None:
            return None
        box = self._box_provider()
        if box is None:
            return None

        position = project_cursor(
            self._text,
            self._record.cursor_position,
            box,
            measurer=self._measurer,
            soft_wrap=self._soft_wrap,
        )
        if position != self.position:
            self.position = position
            try:
                self._on_move(position)
            except Exception:
                logger.exception("Error in cursor on_move for %s", self._record.user_id)
        return position

    def start(self) -> None:
        """Start the layout polling timer. Requires a running event loop."""
        if self.running:
            return
        self._task = asyncio.ensure_future(self._poll())

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.recompute()
            except Exception:
                logger.exception("Cursor projection failed")

    async def stop(self) -> None:
        """Cancel the polling timer."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
