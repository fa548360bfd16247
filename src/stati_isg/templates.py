"""Template discovery conventions shared by the dependency tracker and renderer.

Layouts are found by walking up from the page's directory to the source
root; partials live in underscore-prefixed directories and are visible to
every template at or below the directory that holds them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from rapidfuzz import fuzz, process

from stati_isg.constants import INDEX_TEMPLATE, LAYOUT_TEMPLATE, TEMPLATE_EXTENSION

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from stati_isg.models.page import PageModel

log = structlog.get_logger()


def with_template_extension(name: str) -> str:
    return name if name.endswith(TEMPLATE_EXTENSION) else f"{name}{TEMPLATE_EXTENSION}"


def within_root(path: Path, root: Path) -> bool:
    return path == root or path.is_relative_to(root)


def ancestor_dirs(start: Path, root: Path) -> list[Path]:
    """Directories from ``start`` up to and including ``root``, nearest first.

    A ``start`` outside ``root`` yields only ``root``; the walk never leaves it.
    """
    try:
        relative = start.relative_to(root)
    except ValueError:
        return [root]
    parts = relative.parts
    dirs = [root.joinpath(*parts[:i]) for i in range(len(parts), 0, -1)]
    dirs.append(root)
    return dirs


def underscore_dirs(directory: Path) -> list[Path]:
    """Underscore-prefixed subdirectories of ``directory``, sorted by name."""
    try:
        return sorted(
            child for child in directory.iterdir() if child.is_dir() and child.name.startswith("_")
        )
    except FileNotFoundError:
        return []


def page_source_path(page: PageModel, src_dir: Path) -> Path:
    source = page.source_path if page.source_path.is_absolute() else src_dir / page.source_path
    return source.resolve()


def discover_layout(page: PageModel, src_dir: Path) -> Path | None:
    """Resolve the layout template a page renders with.

    An explicit ``layout`` in front matter wins when the file exists.
    Otherwise each directory from the page's own up to ``src_dir`` is checked
    for ``index.eta`` (collection index pages only) and then ``layout.eta``.
    """
    explicit = page.front_matter.get("layout")
    if isinstance(explicit, str) and explicit:
        candidate = (src_dir / with_template_extension(explicit)).resolve()
        if within_root(candidate, src_dir) and candidate.is_file():
            return candidate
        log.warning(
            "explicit_layout_not_found",
            layout=explicit,
            page=str(page.source_path),
        )

    is_index = page.is_collection_index
    for directory in ancestor_dirs(page_source_path(page, src_dir).parent, src_dir):
        if is_index:
            index_layout = directory / INDEX_TEMPLATE
            if index_layout.is_file():
                return index_layout
        layout = directory / LAYOUT_TEMPLATE
        if layout.is_file():
            return layout
    return None


def resolve_template_reference(reference: str, from_dir: Path, src_dir: Path) -> Path | None:
    """Resolve a template reference to an existing file under ``src_dir``.

    Tried in order: the reference as a path from ``src_dir``, then every
    underscore directory from ``from_dir`` up to ``src_dir`` (direct child
    first, then nested files with the same name). Returns ``None`` when
    nothing matches.
    """
    filename = with_template_extension(reference.strip().lstrip("/"))

    direct = (src_dir / filename).resolve()
    if within_root(direct, src_dir) and direct.is_file():
        return direct

    for directory in ancestor_dirs(from_dir, src_dir):
        for partial_dir in underscore_dirs(directory):
            candidate = (partial_dir / filename).resolve()
            if within_root(candidate, src_dir) and candidate.is_file():
                return candidate
            suffix = "/" + filename
            for nested in sorted(partial_dir.rglob(filename.rsplit("/", 1)[-1])):
                if nested.is_file() and nested.as_posix().endswith(suffix):
                    return nested.resolve()
    return None


def discover_partials(page: PageModel, src_dir: Path) -> dict[str, Path]:
    """Map partial name → file for every partial visible to ``page``.

    A partial in a nearer directory shadows one with the same name higher up.
    """
    partials: dict[str, Path] = {}
    for directory in ancestor_dirs(page_source_path(page, src_dir).parent, src_dir):
        for partial_dir in underscore_dirs(directory):
            for template in sorted(partial_dir.rglob(f"*{TEMPLATE_EXTENSION}")):
                partials.setdefault(template.stem, template)
    return partials


# ---------------------------------------------------------------------------
# Partial lookup
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Found:
    path: Path


@dataclass(frozen=True)
class NotFound:
    name: str
    suggestions: list[str] = field(default_factory=list)


def lookup_partial(
    name: str,
    partials: Mapping[str, Path],
    *,
    score_cutoff: int = 60,
    max_suggestions: int = 3,
) -> Found | NotFound:
    """Look up a partial by name; on a miss, suggest similar names.

    The renderer decides how to present a ``NotFound``.
    """
    path = partials.get(name)
    if path is not None:
        return Found(path)

    results = process.extract(
        name,
        list(partials),
        scorer=fuzz.ratio,
        limit=max_suggestions,
        score_cutoff=score_cutoff,
    )
    return NotFound(name=name, suggestions=[term for term, _score, _idx in results])
