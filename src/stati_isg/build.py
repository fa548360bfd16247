"""Build driver.

Responsibilities (and nothing more):
- Configure structlog
- Hold the build lock for the whole build
- Load the manifest once, decide and render pages, save the manifest once
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from stati_isg.locks import build_lock
from stati_isg.manifest import create_empty_manifest, load_manifest, save_manifest
from stati_isg.rebuild import create_cache_entry, should_rebuild, update_cache_entry
from stati_isg.state import BuildContext

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stati_isg.config import Settings
    from stati_isg.models.page import PageModel
    from stati_isg.protocols import PageRenderer

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once by the entrypoint before any build."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout is reserved for the CLI's progress output
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


@dataclass
class BuildOptions:
    force: bool = False  # Re-render every page, bypassing the decision engine
    clean: bool = False  # Discard the manifest before building
    force_lock: bool = False  # Take the build lock even if another process holds it


@dataclass
class BuildStats:
    total_pages: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    build_time_ms: int = 0

    @property
    def hit_rate(self) -> float:
        return self.cache_hits / self.total_pages if self.total_pages else 0.0


async def _process_page(
    ctx: BuildContext,
    page: PageModel,
    renderer: PageRenderer,
    *,
    force: bool,
    now: datetime,
    stats: BuildStats,
    manifest_lock: asyncio.Lock,
) -> None:
    key = page.output_path
    existing = ctx.manifest.entries.get(key)

    rebuild = force or await asyncio.to_thread(
        should_rebuild, page, existing, ctx.settings, now, cache=ctx.template_cache
    )
    if not rebuild:
        stats.cache_hits += 1
        log.debug("page_cached", url=page.url)
        return

    stats.cache_misses += 1
    log.debug("page_rendering", url=page.url)
    await renderer.render(page)

    if existing is not None:
        entry = await asyncio.to_thread(
            update_cache_entry, existing, page, ctx.settings, now, cache=ctx.template_cache
        )
    else:
        entry = await asyncio.to_thread(
            create_cache_entry, page, ctx.settings, now, cache=ctx.template_cache
        )

    async with manifest_lock:
        ctx.manifest.entries[key] = entry


async def build(
    pages: Sequence[PageModel],
    renderer: PageRenderer,
    settings: Settings,
    options: BuildOptions | None = None,
    *,
    now: datetime | None = None,
) -> BuildStats:
    """Render the pages that need it and persist the updated manifest.

    Pages are decided and rendered concurrently, up to
    ``settings.build.concurrency`` at a time. A ``CircularDependencyError``
    or a manifest save failure aborts the build.
    """
    options = options or BuildOptions()
    started = time.perf_counter()
    ctx = BuildContext(settings=settings)
    build_time = now or datetime.now(UTC)
    force = options.force or not settings.isg.enabled

    async with build_lock(
        ctx.cache_dir,
        force=options.force_lock,
        timeout=settings.build.lock_timeout_seconds,
        poll_interval=settings.build.lock_poll_interval_seconds,
        hostname=ctx.hostname,
    ):
        if options.clean:
            log.info("manifest_discarded", cache_dir=str(ctx.cache_dir))
            ctx.manifest = create_empty_manifest()
        else:
            ctx.manifest = load_manifest(ctx.cache_dir) or create_empty_manifest()

        stats = BuildStats(total_pages=len(pages))
        semaphore = asyncio.Semaphore(settings.build.concurrency)
        manifest_lock = asyncio.Lock()

        async def run(page: PageModel) -> None:
            async with semaphore:
                await _process_page(
                    ctx,
                    page,
                    renderer,
                    force=force,
                    now=build_time,
                    stats=stats,
                    manifest_lock=manifest_lock,
                )

        try:
            async with asyncio.TaskGroup() as tg:
                for page in pages:
                    tg.create_task(run(page))
        except ExceptionGroup as group:
            # Callers handle StatiError, not exception groups: surface the first failure.
            raise group.exceptions[0] from group

        save_manifest(ctx.cache_dir, ctx.manifest)

    stats.build_time_ms = int((time.perf_counter() - started) * 1000)
    log.info(
        "build_complete",
        pages=stats.total_pages,
        cache_hits=stats.cache_hits,
        cache_misses=stats.cache_misses,
        duration_ms=stats.build_time_ms,
    )
    return stats
