"""
Text layout helpers for generated report pages.

Template pages (cover, summary, photo appendix) use US Letter with a fixed
margin; text is wrapped against Helvetica metrics from PyMuPDF.
"""

from datetime import datetime
from typing import List, Optional, Tuple

import fitz  # PyMuPDF

LETTER = (612, 792)
PAGE_MARGIN = 60
BODY_SIZE = 11
LINE_HEIGHT = 16

FONT = "helv"
FONT_BOLD = "hebo"

TEXT_COLOR = (0.2, 0.2, 0.2)
HEADING_COLOR = (0.12, 0.2, 0.55)
MUTED_COLOR = (0.35, 0.35, 0.35)
RULE_COLOR = (0.8, 0.8, 0.8)


def text_width(text: str, size: float, bold: bool = False) -> float:
    return fitz.get_text_length(text, fontname=FONT_BOLD if bold else FONT, fontsize=size)


def safe_text(value: Optional[str], fallback: str = "") -> str:
    text = (value or "").strip()
    return text or fallback


def wrap_text(text: str, size: float, max_width: float, bold: bool = False) -> List[str]:
    """Greedy word wrap; explicit newlines start new paragraphs."""
    lines: List[str] = []
    for paragraph in (text or "").splitlines() or [""]:
        line = ""
        for word in paragraph.split():
            candidate = f"{line} {word}" if line else word
            if text_width(candidate, size, bold) <= max_width:
                line = candidate
                continue
            if line:
                lines.append(line)
            # Single words wider than the column are hard-truncated
            line = truncate_text(word, size, max_width, bold)
        lines.append(line)
    return lines or [""]


def truncate_text(text: str, size: float, max_width: float, bold: bool = False) -> str:
    if text_width(text, size, bold) <= max_width:
        return text
    trimmed = text.strip()
    while trimmed and text_width(f"{trimmed}...", size, bold) > max_width:
        trimmed = trimmed[:-1]
    return f"{trimmed}..." if trimmed else ""


def format_date_long(value: datetime) -> str:
    return value.strftime("%B %d, %Y").replace(" 0", " ")


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "Unknown date"
    return value.strftime("%Y-%m-%d %H:%M")


class PageWriter:
    """
    Top-down text cursor over template pages.

    ``y`` is the distance from the top of the current page; ``ensure_space``
    starts a new page when the next block would cross the bottom margin.
    """

    def __init__(self, doc: fitz.Document, size: Tuple[float, float] = LETTER, margin: float = PAGE_MARGIN):
        self.doc = doc
        self.width, self.height = size
        self.margin = margin
        self.page: Optional[fitz.Page] = None
        self.y = margin
        self.new_page()

    @property
    def content_width(self) -> float:
        return self.width - self.margin * 2

    def new_page(self) -> fitz.Page:
        self.page = self.doc.new_page(width=self.width, height=self.height)
        self.y = self.margin
        return self.page

    def ensure_space(self, needed: float) -> bool:
        """Returns True when a page break happened."""
        if self.y + needed > self.height - self.margin:
            self.new_page()
            return True
        return False

    def text(
        self,
        text: str,
        size: float = BODY_SIZE,
        x: Optional[float] = None,
        bold: bool = False,
        color: Tuple[float, float, float] = TEXT_COLOR,
    ):
        """Draw one line with its top at the cursor (cursor is not advanced)."""
        self.page.insert_text(
            fitz.Point(self.margin if x is None else x, self.y + size),
            text,
            fontname=FONT_BOLD if bold else FONT,
            fontsize=size,
            color=color,
        )

    def heading(self, text: str, size: float = 18, gap: float = 10):
        self.ensure_space(size + gap)
        self.text(text, size=size, bold=True, color=HEADING_COLOR)
        self.y += size + gap

    def paragraph(self, text: str, size: float = BODY_SIZE, line_height: float = LINE_HEIGHT,
                  color: Tuple[float, float, float] = TEXT_COLOR):
        for line in wrap_text(text, size, self.content_width):
            self.ensure_space(line_height)
            self.text(line, size=size, color=color)
            self.y += line_height

    def centered(self, text: str, y: float, size: float, bold: bool = False,
                 color: Tuple[float, float, float] = TEXT_COLOR):
        line = truncate_text(text, size, self.content_width, bold)
        x = (self.width - text_width(line, size, bold)) / 2
        self.page.insert_text(
            fitz.Point(x, y + size),
            line,
            fontname=FONT_BOLD if bold else FONT,
            fontsize=size,
            color=color,
        )

    def rule(self, gap: float = 6):
        shape = self.page.new_shape()
        shape.draw_line(fitz.Point(self.margin, self.y), fitz.Point(self.width - self.margin, self.y))
        shape.finish(color=RULE_COLOR, width=0.75)
        shape.commit()
        self.y += gap
