"""Per-build state container.

A BuildContext is created once per build (or dev-server session) and passed
by reference to everything that needs shared, lazily computed values. Nothing
here lives at module level, so two builds in one process never share state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING

from stati_isg.deps import TemplateReferenceCache
from stati_isg.locks import get_hostname
from stati_isg.models.cache import CacheManifest

if TYPE_CHECKING:
    from pathlib import Path

    from stati_isg.config import Settings


@dataclass
class BuildContext:
    """Holds all shared runtime state for one build."""

    settings: Settings
    manifest: CacheManifest = field(default_factory=CacheManifest)

    # Parsed template references, shared by every page in the build
    template_cache: TemplateReferenceCache = field(default_factory=TemplateReferenceCache)

    @cached_property
    def src_dir(self) -> Path:
        return self.settings.site.resolved_src_dir()

    @cached_property
    def cache_dir(self) -> Path:
        return self.settings.site.resolved_cache_dir()

    @cached_property
    def hostname(self) -> str:
        """Looked up on first use, then reused for every lock this build takes."""
        return get_hostname()
