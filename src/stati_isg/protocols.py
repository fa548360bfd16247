"""Protocol interfaces for collaborators outside the ISG engine.

The build driver depends on these, not on a concrete template engine, so
tests can pass lightweight fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from stati_isg.models.page import PageModel


class PageRenderer(Protocol):
    """Renders one page and writes its HTML to the output directory."""

    async def render(self, page: PageModel) -> None: ...
