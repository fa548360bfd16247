"""Durable JSON cache manifest.

Loading is defensive: a missing, empty, malformed or structurally wrong file
loads as ``None`` (the build starts from an empty cache), and individual
entries that fail validation are dropped so only those pages rebuild.
Saving is fatal on failure: the build finished but its cache would not be
recorded, so it raises ``ManifestSaveError`` with an actionable message.
"""

from __future__ import annotations

import errno
import json
import os
from contextlib import suppress
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from stati_isg.constants import MANIFEST_FILENAME
from stati_isg.errors import ManifestSaveError
from stati_isg.models.cache import CacheEntry, CacheManifest

if TYPE_CHECKING:
    from pathlib import Path

log = structlog.get_logger()


def manifest_path(cache_dir: Path) -> Path:
    return cache_dir / MANIFEST_FILENAME


def create_empty_manifest() -> CacheManifest:
    return CacheManifest()


def validate_entries(raw_entries: dict[str, Any]) -> tuple[dict[str, CacheEntry], int]:
    """Validate raw manifest entries; returns (valid entries, discarded count)."""
    valid: dict[str, CacheEntry] = {}
    discarded = 0
    for key, raw in raw_entries.items():
        if not isinstance(raw, dict):
            log.warning("manifest_entry_invalid", path=key, reason="not an object")
            discarded += 1
            continue
        try:
            entry = CacheEntry.model_validate(raw)
        except ValidationError as exc:
            log.warning(
                "manifest_entry_invalid",
                path=key,
                reason="; ".join(
                    f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                    for err in exc.errors()
                ),
            )
            discarded += 1
            continue
        if entry.path != key:
            # Entries are keyed by their output path; a mismatch cannot be trusted
            log.warning(
                "manifest_entry_invalid",
                path=key,
                reason=f"recorded path {entry.path!r} does not match its key",
            )
            discarded += 1
            continue
        valid[key] = entry
    return valid, discarded


def load_manifest(cache_dir: Path) -> CacheManifest | None:
    """Load the manifest from ``cache_dir``, or ``None`` if there is nothing usable."""
    path = manifest_path(cache_dir)

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except PermissionError:
        log.error(
            "manifest_read_permission_denied",
            path=str(path),
            hint="Check file permissions or run with appropriate privileges.",
        )
        return None
    except OSError as exc:
        if exc.errno in (errno.EMFILE, errno.ENFILE):
            log.error(
                "manifest_read_too_many_open_files",
                path=str(path),
                hint="Reduce build concurrency or raise the file descriptor limit.",
            )
        else:
            log.warning("manifest_read_failed", path=str(path), exc_info=True)
        return None
    except UnicodeDecodeError:
        log.warning("manifest_invalid", path=str(path), reason="not valid UTF-8")
        return None

    if not text.strip():
        log.warning("manifest_invalid", path=str(path), reason="empty file")
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        log.warning("manifest_invalid", path=str(path), reason=f"invalid JSON: {exc}")
        return None

    if not isinstance(data, dict):
        log.warning("manifest_invalid", path=str(path), reason="top level is not an object")
        return None
    entries = data.get("entries")
    if not isinstance(entries, dict):
        log.warning("manifest_invalid", path=str(path), reason='"entries" missing or not an object')
        return None

    valid, discarded = validate_entries(entries)
    if discarded:
        log.warning("manifest_entries_discarded", path=str(path), count=discarded)
    log.debug("manifest_loaded", path=str(path), entries=len(valid))
    return CacheManifest(entries=valid)


def _write_text_fsync(path: Path, text: str) -> None:
    with path.open("w", encoding="utf-8") as fh:
        fh.write(text)
        fh.flush()
        os.fsync(fh.fileno())


def save_manifest(cache_dir: Path, manifest: CacheManifest) -> None:
    """Persist the manifest, replacing the previous file atomically."""
    path = manifest_path(cache_dir)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(manifest.to_json_dict(), indent=2, ensure_ascii=False) + "\n"

    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
        _write_text_fsync(tmp_path, payload)
        os.replace(tmp_path, path)
    except OSError as exc:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        log.error("manifest_save_failed", path=str(path), error=str(exc))
        raise _save_error(exc, cache_dir, path) from exc

    log.debug("manifest_saved", path=str(path), entries=len(manifest.entries))


def _save_error(exc: OSError, cache_dir: Path, path: Path) -> ManifestSaveError:
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ManifestSaveError(
            f"Permission denied saving cache manifest to {path}.",
            "Check directory permissions or run with appropriate privileges.",
        )
    if exc.errno == errno.ENOSPC:
        return ManifestSaveError(
            f"No space left on device when saving cache manifest to {path}.",
            "Free up disk space and try again.",
        )
    if exc.errno in (errno.EMFILE, errno.ENFILE):
        return ManifestSaveError(
            "Too many open files when saving cache manifest.",
            "Reduce build concurrency or raise the file descriptor limit.",
        )
    if isinstance(exc, (NotADirectoryError, FileExistsError)) or exc.errno == errno.ENOTDIR:
        return ManifestSaveError(
            f"Cache directory path {cache_dir} is not a directory.",
            "Remove the conflicting file and try again.",
        )
    return ManifestSaveError(f"Failed to save cache manifest to {path}: {exc}")
