"""Content-addressed digests for pages and template dependencies.

All digests are SHA-256, hex encoded, prefixed with ``sha256-``. Hashing a
dependency file is the only I/O; a missing or unreadable file yields ``None``
instead of raising, so one bad partial forces a rebuild rather than aborting
the build.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

import structlog

from stati_isg.constants import HASH_PREFIX

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

log = structlog.get_logger()


def _sha256(parts: Iterable[str]) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
    return HASH_PREFIX + digest.hexdigest()


def _string_keys(value: Any) -> Any:
    """Recursively turn mapping keys into strings so mixed-type keys can be sorted."""
    if isinstance(value, dict):
        return {str(key): _string_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_string_keys(item) for item in value]
    return value


def _serialise_front_matter(front_matter: dict[str, Any]) -> str:
    # YAML allows non-string keys and date values; both are stringified.
    return json.dumps(
        _string_keys(front_matter),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def hash_content(content: str, front_matter: dict[str, Any]) -> str:
    """Digest of a page's raw content and front matter.

    Front matter keys are sorted (recursively), so insertion order never
    affects the result.
    """
    return _sha256([content, _serialise_front_matter(front_matter)])


def hash_file(path: Path) -> str | None:
    """Digest of a dependency file, or ``None`` if it is absent or unreadable."""
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError:
        log.warning("dependency_hash_failed", path=str(path), exc_info=True)
        return None
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def combine_inputs_hash(content_hash: str, dependency_hashes: Iterable[str]) -> str:
    """Combine a content digest with dependency digests into one inputs hash.

    Dependency digests are sorted first, so discovery order never matters.
    """
    return _sha256([content_hash, *sorted(dependency_hashes)])


def hash_dependencies(deps: Iterable[Path]) -> list[str]:
    """Hash each dependency, dropping the ones that are absent."""
    hashes: list[str] = []
    for dep in deps:
        digest = hash_file(dep)
        if digest is not None:
            hashes.append(digest)
    return hashes
