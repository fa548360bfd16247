"""Unit tests for template reference parsing and dependency tracking."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from stati_isg.deps import (
    TemplateReferenceCache,
    parse_template_references,
    track_dependencies,
    walk_template_graph,
)
from stati_isg.errors import CircularDependencyError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from stati_isg.config import Settings
    from stati_isg.models.page import PageModel


class TestParseTemplateReferences:
    def test_all_reference_forms_in_order(self) -> None:
        source = (
            "<%~ layout('base') %>\n"
            "<%~ include('header', { title: it.title }) %>\n"
            "<%~ stati.partials.footer %>\n"
            "<%~ stati.partials['nav'] %>\n"
            '<% extends("shell") %>\n'
        )
        assert parse_template_references(source) == ["base", "header", "footer", "nav", "shell"]

    def test_duplicates_collapse_to_first_occurrence(self) -> None:
        source = "<%~ include('a') %><%~ include('b') %><%~ include('a') %>"
        assert parse_template_references(source) == ["a", "b"]

    def test_partial_call_syntax(self) -> None:
        assert parse_template_references("<%~ stati.partials.hero({ big: true }) %>") == ["hero"]

    def test_plain_text_has_no_references(self) -> None:
        assert parse_template_references("<p>include('x') outside a tag</p>") == []


class TestWalkTemplateGraph:
    def test_only_reached_templates_are_collected(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('header') %>")
        header = write_template("_partials/header.eta", "<%~ stati.partials.nav %>")
        nav = write_template("_partials/nav.eta", "<nav/>")
        write_template("_partials/footer.eta", "<footer/>")

        assert walk_template_graph(layout, site_dir) == [layout, header, nav]

    def test_cycle_raises_with_full_chain(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('a') %>")
        a = write_template("_partials/a.eta", "<%~ include('b') %>")
        b = write_template("_partials/b.eta", "<%~ include('a') %>")

        with pytest.raises(CircularDependencyError) as exc_info:
            walk_template_graph(layout, site_dir)

        assert exc_info.value.chain == [layout, a, b, a]
        assert exc_info.value.code == ErrorCode.CIRCULAR_DEPENDENCY
        assert f"{a} -> {b} -> {a}" in exc_info.value.message

    def test_self_reference_is_a_cycle(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('layout') %>")

        with pytest.raises(CircularDependencyError) as exc_info:
            walk_template_graph(layout, site_dir)

        assert exc_info.value.chain == [layout, layout]

    def test_diamond_is_not_a_cycle(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('x') %><%~ include('y') %>")
        x = write_template("_partials/x.eta", "<%~ include('z') %>")
        y = write_template("_partials/y.eta", "<%~ include('z') %>")
        z = write_template("_partials/z.eta", "leaf")

        assert walk_template_graph(layout, site_dir) == [layout, x, z, y]

    def test_unresolved_reference_is_skipped(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('missing') %>")
        assert walk_template_graph(layout, site_dir) == [layout]

    def test_unreadable_template_kept_and_branch_abandoned(
        self, site_dir: Path, write_template: Callable[..., Path]
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('bad') %>")
        bad = site_dir / "_partials" / "bad.eta"
        bad.parent.mkdir(parents=True)
        bad.write_bytes(b"\xff\xfe\x00not utf-8")

        assert walk_template_graph(layout, site_dir) == [layout, bad]

    def test_missing_entry_yields_nothing(self, site_dir: Path) -> None:
        assert walk_template_graph(site_dir / "layout.eta", site_dir) == []


class TestTemplateReferenceCache:
    def test_reuses_parse_until_file_changes(
        self, write_template: Callable[..., Path]
    ) -> None:
        header = write_template("_partials/header.eta", "<%~ include('a') %>")
        cache = TemplateReferenceCache()

        first = cache.references(header)
        assert cache.references(header) is first
        assert len(cache) == 1

        header.write_text("<%~ include('a') %><%~ include('b') %>", encoding="utf-8")
        stat = header.stat()
        os.utime(header, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))

        assert cache.references(header) == ["a", "b"]

    def test_missing_template(self, tmp_path: Path) -> None:
        cache = TemplateReferenceCache()
        assert cache.references(tmp_path / "absent.eta") is None
        assert len(cache) == 0


class TestTrackDependencies:
    def test_layout_first_then_reached_templates(
        self,
        settings: Settings,
        write_template: Callable[..., Path],
        make_page: Callable[..., PageModel],
    ) -> None:
        layout = write_template("layout.eta", "<%~ include('header') %>")
        header = write_template("_partials/header.eta", "")

        assert track_dependencies(make_page(), settings) == [layout, header]

    def test_shared_cache_gives_same_result(
        self,
        settings: Settings,
        write_template: Callable[..., Path],
        make_page: Callable[..., PageModel],
    ) -> None:
        write_template("layout.eta", "<%~ include('header') %>")
        write_template("_partials/header.eta", "")
        cache = TemplateReferenceCache()

        first = track_dependencies(make_page(), settings, cache=cache)
        assert track_dependencies(make_page("/blog/other"), settings, cache=cache) == first

    def test_no_layout(self, settings: Settings, make_page: Callable[..., PageModel]) -> None:
        assert track_dependencies(make_page(), settings) == []

    def test_missing_source_root(
        self,
        make_settings: Callable[..., Settings],
        site_dir: Path,
        make_page: Callable[..., PageModel],
    ) -> None:
        settings = make_settings()
        site_dir.rmdir()
        assert track_dependencies(make_page(), settings) == []
