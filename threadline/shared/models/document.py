"""Citation and highlight models for document viewing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class CitationEntry:
    """A reference to a source document region supporting an answer."""

    pdf_file: str
    block_indices: tuple[int, ...] | None = None
    debug: bool = False
    keywords: tuple[str, ...] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> CitationEntry:
        """Build an entry from the citation tool's JSON object.

        Raises ``ValueError`` when the payload is not an object, has no
        ``pdf_file`` or carries a non-integer block index.
        """
        if not isinstance(data, dict):
            raise ValueError(f"citation entry must be an object, got {type(data).__name__}")
        pdf_file = data.get("pdf_file")
        if not isinstance(pdf_file, str) or not pdf_file:
            raise ValueError("citation entry is missing 'pdf_file'")

        blocks = data.get("block_indices")
        block_indices = None
        if isinstance(blocks, list):
            try:
                block_indices = tuple(int(b) for b in blocks)
            except TypeError as exc:
                raise ValueError(f"invalid block index in {blocks!r}") from exc

        words = data.get("keywords")
        keywords = None
        if isinstance(words, list):
            keywords = tuple(str(w) for w in words)

        return cls(
            pdf_file=pdf_file,
            block_indices=block_indices,
            debug=bool(data.get("debug", False)),
            keywords=keywords,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pdf_file": self.pdf_file}
        if self.block_indices is not None:
            data["block_indices"] = list(self.block_indices)
        if self.debug:
            data["debug"] = True
        if self.keywords is not None:
            data["keywords"] = list(self.keywords)
        return data


@dataclass(frozen=True)
class HighlightRegion:
    """A rectangle in top-left-origin viewer coordinates.

    ``page`` is 1-based. ``color`` is an optional hex string (``#rrggbb``)
    supplied by the annotation service.
    """

    page: int
    x: float
    y: float
    width: float
    height: float
    color: str | None = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HighlightRegion:
        color = data.get("color")
        return cls(
            page=int(data["page"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            color=color if isinstance(color, str) else None,
        )

    def native_y(self, page_height: float) -> float:
        """Return the bottom-left-origin y coordinate on a page of ``page_height``."""
        return page_height - self.y - self.height
