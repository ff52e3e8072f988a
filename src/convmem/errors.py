"""Classified error hierarchy for convmem.

Every error carries a stable ``code``, an :class:`ErrorKind` classification
and a transport-neutral status code so request surfaces can map failures
without string matching.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Coarse classification used for retry decisions."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.DEPENDENCY: 502,
    ErrorKind.INTERNAL: 500,
}


class ConvMemError(Exception):
    """Base error for every failure raised by convmem."""

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    @property
    def retriable(self) -> bool:
        """Conflicts clear once the holder finishes; dependency failures may be transient."""
        return self.kind in (ErrorKind.CONFLICT, ErrorKind.DEPENDENCY)

    def to_response(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# ---------------------------------------------------------------------------
# Classification bases
# ---------------------------------------------------------------------------


class NotFoundError(ConvMemError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(ConvMemError):
    kind = ErrorKind.CONFLICT
    code = "CONFLICT"


class InvalidInputError(ConvMemError):
    kind = ErrorKind.INVALID_INPUT
    code = "INVALID_INPUT"


class DependencyError(ConvMemError):
    kind = ErrorKind.DEPENDENCY
    code = "DEPENDENCY_FAILED"


class InternalError(ConvMemError):
    kind = ErrorKind.INTERNAL
    code = "INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class ProjectNotFound(NotFoundError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found", {"project_id": project_id})


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, project_id: str | None = None) -> None:
        msg = f"Session {session_id} not found"
        if project_id:
            msg += f" in project {project_id}"
        super().__init__(msg, {"session_id": session_id, "project_id": project_id})


class VersionNotFound(NotFoundError):
    code = "VERSION_NOT_FOUND"

    def __init__(self, version_id: str, session_id: str) -> None:
        super().__init__(
            f"Version {version_id} not found for session {session_id}",
            {"version_id": version_id, "session_id": session_id},
        )


class PartNotFound(NotFoundError):
    code = "PART_NOT_FOUND"

    def __init__(self, part_number: int, session_id: str) -> None:
        super().__init__(
            f"Part {part_number} not found for session {session_id}",
            {"part_number": part_number, "session_id": session_id},
        )


class CompositionNotFound(NotFoundError):
    code = "COMPOSITION_NOT_FOUND"

    def __init__(self, composition_id: str) -> None:
        super().__init__(
            f"Composition {composition_id} not found", {"composition_id": composition_id}
        )


class MarkerNotFound(NotFoundError):
    code = "KEEPIT_NOT_FOUND"

    def __init__(self, marker_id: str, session_id: str) -> None:
        super().__init__(
            f"Pinned marker {marker_id} not found in session {session_id}",
            {"marker_id": marker_id, "session_id": session_id},
        )


class OriginalFileNotFound(NotFoundError):
    code = "ORIGINAL_FILE_NOT_FOUND"

    def __init__(self, path: str) -> None:
        super().__init__(f"Original session file not found: {path}", {"path": path})


class VersionFileNotFound(NotFoundError):
    code = "VERSION_FILE_NOT_FOUND"

    def __init__(self, version_id: str, path: str) -> None:
        super().__init__(
            f"File for version {version_id} not found: {path}",
            {"version_id": version_id, "path": path},
        )


class CompositionFileNotFound(NotFoundError):
    code = "COMPOSITION_FILE_NOT_FOUND"

    def __init__(self, composition_id: str, path: str) -> None:
        super().__init__(
            f"File for composition {composition_id} not found: {path}",
            {"composition_id": composition_id, "path": path},
        )


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class SessionAlreadyRegistered(ConflictError):
    code = "SESSION_ALREADY_REGISTERED"

    def __init__(self, session_id: str, project_id: str) -> None:
        super().__init__(
            f"Session {session_id} is already registered in project {project_id}",
            {"session_id": session_id, "project_id": project_id},
        )


class LockBusy(ConflictError):
    code = "LOCK_BUSY"

    def __init__(self, resource_key: str, holder: str, age_sec: float) -> None:
        super().__init__(
            f"Lock {resource_key} is held by {holder} ({age_sec:.1f}s)",
            {"resource_key": resource_key, "holder": holder, "age_sec": round(age_sec, 3)},
        )


class LockTimeout(ConflictError):
    code = "LOCK_TIMEOUT"

    def __init__(self, resource_key: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for lock {resource_key}",
            {"resource_key": resource_key, "timeout": timeout},
        )


class CompressionInProgress(ConflictError):
    code = "COMPRESSION_IN_PROGRESS"

    def __init__(self, session_id: str, operation: str = "compression") -> None:
        super().__init__(
            f"A {operation} operation is already in progress for session {session_id}",
            {"session_id": session_id, "operation": operation},
        )


class VersionExists(ConflictError):
    code = "VERSION_EXISTS"

    def __init__(self, part_number: int, version_id: str) -> None:
        super().__init__(
            f"Part {part_number} already has version {version_id} with identical settings",
            {"part_number": part_number, "existing_version_id": version_id},
        )


class VersionInUse(ConflictError):
    code = "VERSION_IN_USE"

    def __init__(self, version_id: str, session_id: str, composition_ids: list[str]) -> None:
        super().__init__(
            f"Version {version_id} of session {session_id} is used by "
            f"{len(composition_ids)} composition(s)",
            {
                "version_id": version_id,
                "session_id": session_id,
                "composition_ids": composition_ids,
            },
        )


class CompositionExists(ConflictError):
    code = "COMPOSITION_EXISTS"

    def __init__(self, name: str) -> None:
        super().__init__(f"A composition named {name!r} already exists", {"name": name})


# ---------------------------------------------------------------------------
# Invalid input
# ---------------------------------------------------------------------------


class InvalidSettings(InvalidInputError):
    code = "INVALID_SETTINGS"

    def __init__(self, validation_errors: list[str]) -> None:
        self.validation_errors = validation_errors
        super().__init__(
            "Invalid compression settings: " + "; ".join(validation_errors),
            {"validation_errors": validation_errors},
        )


class ValidationFailed(InvalidInputError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid {field}: {reason}", {"field": field, "reason": reason})


class InvalidPart(InvalidInputError):
    code = "INVALID_PART"

    def __init__(self, part_number: int, reason: str) -> None:
        super().__init__(
            f"Part {part_number} cannot be recompressed: {reason}",
            {"part_number": part_number, "reason": reason},
        )


class InsufficientMessages(InvalidInputError):
    code = "INSUFFICIENT_MESSAGES"

    def __init__(self, session_id: str, count: int, required: int = 2) -> None:
        super().__init__(
            f"Session {session_id} has {count} new message(s); at least {required} required",
            {"session_id": session_id, "count": count, "required": required},
        )


class NoDelta(InvalidInputError):
    code = "NO_DELTA"

    def __init__(self, session_id: str, last_part_number: int) -> None:
        super().__init__(
            f"No new messages since part {last_part_number} for session {session_id}",
            {"session_id": session_id, "last_part_number": last_part_number},
        )


class DeltaAnchorMissing(InvalidInputError):
    code = "DELTA_ANCHOR_MISSING"

    def __init__(
        self, session_id: str, part_number: int, message_id: str | None, end_index: int
    ) -> None:
        super().__init__(
            f"Message {message_id} ending part {part_number} of session {session_id} "
            f"is no longer at index {end_index} of the log",
            {
                "session_id": session_id,
                "part_number": part_number,
                "message_id": message_id,
                "end_index": end_index,
            },
        )


class LogParseRejected(InvalidInputError):
    code = "SESSION_PARSE_ERROR"

    def __init__(self, path: str, skipped: int, total: int, threshold: float) -> None:
        super().__init__(
            f"Refusing to compress {path}: {skipped} of {total} line(s) unreadable "
            f"(threshold {threshold:.0%})",
            {"path": path, "skipped": skipped, "total": total, "threshold": threshold},
        )


class CannotDeleteOriginal(InvalidInputError):
    code = "CANNOT_DELETE_ORIGINAL"

    def __init__(self) -> None:
        super().__init__("The original version cannot be deleted")


class InvalidFormat(InvalidInputError):
    code = "INVALID_FORMAT"

    def __init__(self, fmt: str, valid: list[str]) -> None:
        super().__init__(
            f"Unsupported format {fmt!r}; expected one of {', '.join(valid)}",
            {"format": fmt, "valid": valid},
        )


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


class CompressionFailed(DependencyError):
    code = "COMPRESSION_FAILED"

    def __init__(self, session_id: str, reason: str) -> None:
        self.reason = reason
        super().__init__(
            f"Compression failed for session {session_id}: {reason}",
            {"session_id": session_id, "reason": reason},
        )


class CompressionTimeout(CompressionFailed):
    code = "COMPRESSION_TIMEOUT"

    def __init__(self, session_id: str, timeout: float) -> None:
        super().__init__(session_id, f"timed out after {timeout}s")
        self.details["timeout"] = timeout


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


class ManifestCorruption(InternalError):
    code = "MANIFEST_CORRUPTION"

    def __init__(self, project_id: str, reason: str) -> None:
        super().__init__(
            f"Manifest for project {project_id} is corrupted: {reason}",
            {"project_id": project_id, "reason": reason},
        )


class StorageError(InternalError):
    code = "FILESYSTEM_ERROR"

    def __init__(self, operation: str, path: str, reason: str) -> None:
        super().__init__(
            f"Failed to {operation} {path}: {reason}",
            {"operation": operation, "path": path, "reason": reason},
        )
