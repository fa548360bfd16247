from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


class ErrorCode(StrEnum):
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MANIFEST_SAVE_FAILED = "MANIFEST_SAVE_FAILED"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    LOCK_FAILED = "LOCK_FAILED"
    DEV_SERVER_RUNNING = "DEV_SERVER_RUNNING"
    INVALID_ISG_CONFIG = "INVALID_ISG_CONFIG"


class StatiError(Exception):
    """Raised for every build-fatal condition of the ISG engine.

    Recoverable conditions (missing dependency files, corrupt manifest
    entries, lock release failures) are logged and never raised; anything
    that reaches the caller as a ``StatiError`` means the build cannot be
    trusted and should stop. ``suggestion`` carries the remedy shown to the
    user.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str = "",
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
            }
        }


class CircularDependencyError(StatiError):
    """A template graph contains a cycle. ``chain`` ends with the repeated node."""

    def __init__(self, chain: list[Path]) -> None:
        self.chain = list(chain)
        rendered = " -> ".join(str(p) for p in self.chain)
        super().__init__(
            ErrorCode.CIRCULAR_DEPENDENCY,
            f"Circular dependency detected in templates: {rendered}",
            "Remove one of the include/layout references in the chain.",
        )


class ManifestSaveError(StatiError):
    def __init__(self, message: str, suggestion: str = "") -> None:
        super().__init__(ErrorCode.MANIFEST_SAVE_FAILED, message, suggestion)


class BuildLockError(StatiError):
    pass


class DevServerLockError(StatiError):
    def __init__(self, message: str, suggestion: str, *, same_host: bool | None = None) -> None:
        super().__init__(ErrorCode.DEV_SERVER_RUNNING, message, suggestion)
        self.same_host = same_host


class ISGConfigurationError(StatiError):
    """Invalid ISG override in a page's front matter."""

    def __init__(self, field: str, value: Any, message: str) -> None:
        super().__init__(
            ErrorCode.INVALID_ISG_CONFIG,
            message,
            f"Fix the '{field}' value in the page front matter.",
        )
        self.field = field
        self.value = value
