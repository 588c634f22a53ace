"""Burn highlight rectangles into PDF documents.

Highlight regions come from the annotation service in top-left-origin viewer
coordinates. PDF user space has its origin at the bottom-left of the page,
so each region is flipped with ``page_height - y - height`` before drawing.
Drawing uses PyMuPDF; its page coordinates are reached through the page's
transformation matrix so rotated pages and offset media boxes stay correct.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import fitz

from threadline.engine.errors import OverlayError
from threadline.shared.models.document import CitationEntry, HighlightRegion

logger = logging.getLogger(__name__)

DEFAULT_COLOR = (1.0, 1.0, 0.0)
DEFAULT_OPACITY = 0.4

RGB = tuple[float, float, float]


def parse_color(value: str | None, default: RGB = DEFAULT_COLOR) -> RGB:
    """Parse ``#rrggbb`` into PyMuPDF's 0..1 float triple."""
    if not value:
        return default
    text = value.strip().lstrip("#")
    if len(text) != 6:
        return default
    try:
        return (
            int(text[0:2], 16) / 255.0,
            int(text[2:4], 16) / 255.0,
            int(text[4:6], 16) / 255.0,
        )
    except ValueError:
        return default


def native_rect(region: HighlightRegion, page_height: float) -> tuple[float, float, float, float]:
    """Return ``(x0, y0, x1, y1)`` of *region* in bottom-left-origin PDF space."""
    y0 = region.native_y(page_height)
    return (region.x, y0, region.x + region.width, y0 + region.height)


def _burn(
    document: bytes,
    regions: Sequence[HighlightRegion],
    color: RGB,
    opacity: float,
) -> bytes:
    try:
        doc = fitz.open(stream=document, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as exc:
        raise OverlayError(f"cannot open document: {exc}") from exc

    try:
        drawn = 0
        for region in regions:
            if not 1 <= region.page <= doc.page_count:
                logger.debug("Skipping region on page %d (document has %d)", region.page, doc.page_count)
                continue
            page = doc[region.page - 1]
            page_height = page.mediabox.height
            x0, y0, x1, y1 = native_rect(region, page_height)
            rect = fitz.Rect(x0, y0, x1, y1) * page.transformation_matrix
            rect.normalize()
            page.draw_rect(
                rect,
                color=None,
                fill=parse_color(region.color, color),
                fill_opacity=opacity,
                overlay=True,
            )
            drawn += 1
        logger.debug("Drew %d of %d highlight regions", drawn, len(regions))
        return doc.tobytes()
    finally:
        doc.close()


def overlay(
    document: bytes,
    regions: Sequence[HighlightRegion],
    *,
    color: RGB = DEFAULT_COLOR,
    opacity: float = DEFAULT_OPACITY,
) -> bytes:
    """Return *document* with *regions* drawn as translucent rectangles.

    With no regions the input bytes are returned unchanged. Regions on pages
    outside the document are skipped. Any failure while opening or drawing
    falls back to the original bytes.
    """
    if not regions:
        return document
    try:
        return _burn(document, regions, color, opacity)
    except Exception as exc:
        # A broken highlight must never block viewing the document itself.
        logger.warning("Highlight overlay failed, serving original document: %s", exc, exc_info=True)
        return document


@dataclass
class HighlightedDocument:
    name: str
    content: bytes
    regions: list[HighlightRegion] = field(default_factory=list)


async def load_highlighted_document(
    client,
    entry: CitationEntry,
    *,
    user_id: str | None = None,
    color: RGB = DEFAULT_COLOR,
    opacity: float = DEFAULT_OPACITY,
) -> HighlightedDocument:
    """Fetch a cited document and its highlight regions, then overlay them.

    Debug entries request every structural block; entries with block
    indices request the query-specific regions; other entries are shown
    without highlights. The document fetch itself propagates errors.
    """
    content = await client.get_pdf(entry.pdf_file)
    if entry.debug:
        regions = await client.debug_pdf_blocks(entry.pdf_file, user_id=user_id)
    elif entry.block_indices:
        regions = await client.get_annotations(
            entry.pdf_file,
            entry.block_indices,
            keywords=entry.keywords,
            user_id=user_id,
        )
    else:
        regions = []
    logger.info("Loaded %s with %d highlight regions", entry.pdf_file, len(regions))
    return HighlightedDocument(
        name=entry.pdf_file,
        content=overlay(content, regions, color=color, opacity=opacity),
        regions=list(regions),
    )
