"""Shared test fixtures for the stati_isg test suite."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from stati_isg.config import ISGSettings, Settings, SiteSettings
from stati_isg.models.page import PageModel

if TYPE_CHECKING:
    from collections.abc import Callable

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def now() -> datetime:
    """Fixed build time shared by decision and TTL tests."""
    return T0


@pytest.fixture()
def site_dir(tmp_path: Path) -> Path:
    """Empty source root. Resolved so it compares equal to discovered paths."""
    path = (tmp_path / "site").resolve()
    path.mkdir()
    return path


@pytest.fixture()
def cache_dir(tmp_path: Path) -> Path:
    return (tmp_path / ".stati").resolve()


@pytest.fixture()
def write_template(site_dir: Path) -> Callable[[str, str], Path]:
    """Write a file under the source root and return its absolute path."""

    def _write(relative: str, text: str = "") -> Path:
        path = site_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def make_settings(site_dir: Path, cache_dir: Path) -> Callable[..., Settings]:
    """Settings pointed at the test site; ISG fields may be overridden."""

    def _make(**isg: Any) -> Settings:
        return Settings(
            site=SiteSettings(src_dir=site_dir, cache_dir=cache_dir),
            isg=ISGSettings(**isg),
        )

    return _make


@pytest.fixture()
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture()
def make_page() -> Callable[..., PageModel]:
    """Page factory; source path defaults to the URL mapped onto a .md file."""

    def _make(
        url: str = "/blog/post",
        content: str = "# Hello",
        front_matter: dict[str, Any] | None = None,
        source: str | None = None,
    ) -> PageModel:
        if source is None:
            source = "index.md" if url == "/" else url.strip("/") + ".md"
        return PageModel(
            url=url,
            source_path=Path(source),
            content=content,
            front_matter=front_matter or {},
        )

    return _make
