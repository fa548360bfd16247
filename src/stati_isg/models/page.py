from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def output_path_for(url: str) -> str:
    """Map a page URL to its site-relative output file (the manifest key)."""
    if url == "/":
        return "/index.html"
    if url.endswith("/"):
        return f"{url}index.html"
    return f"{url}.html"


@dataclass
class PageModel:
    """A content page as produced by the content loader.

    The loader owns markdown parsing; the ISG engine only reads these fields.
    """

    url: str
    source_path: Path
    content: str
    front_matter: dict[str, Any] = field(default_factory=dict)

    @property
    def output_path(self) -> str:
        return output_path_for(self.url)

    @property
    def is_collection_index(self) -> bool:
        return self.url == "/" or self.url.endswith("/") or self.source_path.stem == "index"
