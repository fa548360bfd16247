"""Template dependency tracking.

A page depends on its layout plus every template reachable from it through
``include``/``layout``/``extends`` calls and ``stati.partials`` references.
Only templates actually reached are returned: editing a partial that no
template references must not invalidate unrelated pages.

The traversal is an explicit-stack DFS. ``current_path`` holds the ancestors
of the node being expanded and is checked before ``visited``; a node that was
finished on another branch (a diamond) is visited but not on the current
path, and is not a cycle.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

from stati_isg.errors import CircularDependencyError
from stati_isg.templates import discover_layout, resolve_template_reference

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from stati_isg.config import Settings
    from stati_isg.models.page import PageModel

log = structlog.get_logger()

_QUOTED = r"""(['"`])([^'"`]+)\1"""

# <%~ include('x') %>, <%~ include('x', { ... }) %>
_INCLUDE_RE = re.compile(r"<%[~\-=_]?\s*include\s*\(\s*" + _QUOTED)
# <%~ layout('x') %>, <% extends('x') %>
_LAYOUT_RE = re.compile(r"<%[~\-=_]?\s*(?:layout|extends?)\s*\(\s*" + _QUOTED)
# stati.partials.header, stati.partials.hero({ ... })
_PARTIAL_ATTR_RE = re.compile(r"\bstati\.partials\.([A-Za-z_$][\w$]*)")
# stati.partials['header']
_PARTIAL_ITEM_RE = re.compile(r"\bstati\.partials\[\s*(['\"])([^'\"]+)\1\s*\]")


def parse_template_references(source: str) -> list[str]:
    """Extract referenced template names in order of first appearance."""
    found: list[tuple[int, str]] = []
    for pattern in (_INCLUDE_RE, _LAYOUT_RE, _PARTIAL_ITEM_RE):
        found.extend((m.start(), m.group(2)) for m in pattern.finditer(source))
    found.extend((m.start(), m.group(1)) for m in _PARTIAL_ATTR_RE.finditer(source))

    references: dict[str, None] = {}
    for _pos, name in sorted(found):
        references.setdefault(name, None)
    return list(references)


class TemplateReferenceCache:
    """Parsed references per template, keyed on the file's mtime and size.

    Owned by a ``BuildContext`` so every page in a build shares one parse of
    each layout and partial; a changed file gets a new key and is re-parsed.
    """

    def __init__(self) -> None:
        self._entries: dict[Path, tuple[tuple[int, int], list[str]]] = {}

    def references(self, template: Path) -> list[str] | None:
        """Return the references in ``template``, or ``None`` if it does not exist."""
        try:
            stat = template.stat()
        except FileNotFoundError:
            return None
        stamp = (stat.st_mtime_ns, stat.st_size)

        cached = self._entries.get(template)
        if cached is not None and cached[0] == stamp:
            return cached[1]

        references = _read_references(template)
        if references is not None:
            self._entries[template] = (stamp, references)
        return references

    def __len__(self) -> int:
        return len(self._entries)


def _read_references(template: Path) -> list[str] | None:
    try:
        source = template.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return parse_template_references(source)


def _neighbours(
    template: Path,
    src_dir: Path,
    cache: TemplateReferenceCache | None,
) -> list[Path] | None:
    references = cache.references(template) if cache is not None else _read_references(template)
    if references is None:
        return None

    resolved: dict[Path, None] = {}
    for reference in references:
        target = resolve_template_reference(reference, template.parent, src_dir)
        if target is not None:
            resolved.setdefault(target, None)
    return list(resolved)


def walk_template_graph(
    entry: Path,
    src_dir: Path,
    cache: TemplateReferenceCache | None = None,
) -> list[Path]:
    """Collect every template reachable from ``entry``, in DFS pre-order.

    Raises ``CircularDependencyError`` with the full chain on a cycle. Any
    other failure reading one template is logged and that branch abandoned.
    """
    collected: dict[Path, None] = {}
    visited: set[Path] = set()
    current_path: dict[Path, None] = {}
    stack: list[tuple[Path, Iterator[Path]]] = []

    def enter(node: Path) -> None:
        visited.add(node)
        try:
            neighbours = _neighbours(node, src_dir, cache)
        except Exception:
            log.warning("template_read_failed", template=str(node), exc_info=True)
            collected.setdefault(node, None)
            return
        if neighbours is None:
            return  # Missing file: not a dependency
        collected.setdefault(node, None)
        current_path[node] = None
        stack.append((node, iter(neighbours)))

    enter(entry)
    while stack:
        node, neighbours = stack[-1]
        nxt = next(neighbours, None)
        if nxt is None:
            stack.pop()
            del current_path[node]
            continue
        if nxt in current_path:
            chain = [*current_path, nxt]
            log.error("circular_template_dependency", chain=[str(p) for p in chain])
            raise CircularDependencyError(chain)
        if nxt in visited:
            continue
        enter(nxt)

    return list(collected)


def track_dependencies(
    page: PageModel,
    settings: Settings,
    *,
    cache: TemplateReferenceCache | None = None,
) -> list[Path]:
    """Return the absolute template paths ``page``'s render will touch.

    The layout comes first, followed by the templates it reaches.
    """
    src_dir = settings.site.resolved_src_dir()
    if not src_dir.is_dir():
        log.warning("src_dir_missing", src_dir=str(src_dir))
        return []

    layout = discover_layout(page, src_dir)
    if layout is None:
        log.debug("layout_not_found", page=str(page.source_path))
        return []

    return walk_template_graph(layout, src_dir, cache)
