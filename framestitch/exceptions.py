"""Custom exceptions for framestitch.

Every error carries a machine-readable ``code`` whose retryability and
recovery hint are looked up in ``framestitch.constants.error_codes``, so a
host application can report failures without inspecting exception types.
"""

from typing import Any

from framestitch.constants.error_codes import get_error_spec


class FramestitchError(Exception):
    """Base exception for all framestitch errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)

    def context(self) -> dict[str, Any]:
        """Extra fields describing where the error happened."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a machine-readable failure report."""
        spec = get_error_spec(self.code)
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": spec.get("retryable", False),
        }
        suggested_fix = self.suggested_fix or spec.get("suggested_fix")
        if suggested_fix:
            data["suggested_fix"] = suggested_fix
        data.update({k: v for k, v in self.context().items() if v is not None})
        return data


# =============================================================================
# Construction Errors
# =============================================================================


class ConfigurationError(FramestitchError):
    """Invalid timeline, composition or settings, detected before capture."""

    code = "INVALID_CONFIGURATION"
    message = "Invalid render configuration"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
    ):
        self.field = field
        self.value = value
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"field": self.field, "value": self.value}


# =============================================================================
# Capture Errors
# =============================================================================


class CaptureError(FramestitchError):
    """A frame could not be painted, captured or staged."""

    code = "CAPTURE_FAILED"
    message = "Frame capture failed"

    def __init__(self, message: str | None = None, *, frame_index: int | None = None):
        self.frame_index = frame_index
        msg = message or self.message
        if frame_index is not None:
            msg = f"{msg} (frame {frame_index})"
        super().__init__(msg)

    def context(self) -> dict[str, Any]:
        return {"frame_index": self.frame_index}


class BufferClosedError(FramestitchError):
    """put() on a frame buffer that has been closed."""

    code = "BUFFER_CLOSED"
    message = "Frame buffer is closed"


# =============================================================================
# Compile Errors
# =============================================================================


class CompileError(FramestitchError):
    """The composition cannot be turned into a valid filter graph."""

    code = "COMPILE_FAILED"
    message = "Filter graph compilation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        node_id: str | None = None,
        label: str | None = None,
    ):
        self.node_id = node_id
        self.label = label
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"node_id": self.node_id, "label": self.label}


class InvalidFrameRangeError(CompileError):
    """Node range is empty, inverted, or outside the timeline."""

    code = "INVALID_FRAME_RANGE"
    message = "Invalid frame range"

    def __init__(
        self,
        message: str | None = None,
        *,
        node_id: str | None = None,
        start_frame: int | None = None,
        end_frame: int | None = None,
    ):
        self.start_frame = start_frame
        self.end_frame = end_frame
        msg = message or self.message
        if start_frame is not None and end_frame is not None:
            msg = f"{msg}: [{start_frame}, {end_frame})"
        if node_id:
            msg = f"{msg} on node '{node_id}'"
        super().__init__(msg, node_id=node_id)

    def context(self) -> dict[str, Any]:
        return {
            **super().context(),
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
        }


class LabelCollisionError(CompileError):
    """A stream label was produced twice."""

    code = "LABEL_COLLISION"
    message = "Stream label collision"

    def __init__(self, label: str, *, node_id: str | None = None):
        super().__init__(f"Stream label produced twice: [{label}]", node_id=node_id, label=label)


class UnresolvedLabelError(CompileError):
    """A filter consumes a label no earlier filter produced."""

    code = "UNRESOLVED_LABEL"
    message = "Unresolved stream label"

    def __init__(self, label: str, *, node_id: str | None = None):
        super().__init__(
            f"Stream label consumed before it is produced: [{label}]",
            node_id=node_id,
            label=label,
        )


class MissingAssetError(CompileError):
    """A media node points at a file that does not exist."""

    code = "MISSING_ASSET"
    message = "Media asset not found"

    def __init__(self, path: str, *, node_id: str | None = None):
        self.path = path
        super().__init__(f"Media asset not found: {path}", node_id=node_id)

    def context(self) -> dict[str, Any]:
        return {**super().context(), "path": self.path}


class MissingAnchorError(CompileError):
    """A node syncs to an anchor id that is not defined."""

    code = "MISSING_ANCHOR"
    message = "Sync anchor not found"

    def __init__(self, anchor_id: str, *, node_id: str | None = None):
        self.anchor_id = anchor_id
        super().__init__(f"Sync anchor not found: {anchor_id}", node_id=node_id)

    def context(self) -> dict[str, Any]:
        return {**super().context(), "anchor_id": self.anchor_id}


# =============================================================================
# Encoder Errors
# =============================================================================


class EncoderError(FramestitchError):
    """The external encoder failed."""

    code = "ENCODER_FAILED"
    message = "Encoder failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        command: list[str] | None = None,
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command or []
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            # Keep reports small; the full text stays on the exception
            "stderr": self.stderr[-2000:] if self.stderr else None,
        }


class EncoderNotAvailableError(EncoderError):
    code = "ENCODER_NOT_AVAILABLE"
    message = "Encoder executable not available"


class MissingOutputError(EncoderError):
    code = "MISSING_OUTPUT"
    message = "Encoder exited successfully but produced no output"


# =============================================================================
# Lifecycle Errors
# =============================================================================


class RenderCancelledError(FramestitchError):
    code = "RENDER_CANCELLED"
    message = "Render was cancelled"


class InvalidTransitionError(FramestitchError):
    """Illegal render job state change."""

    code = "INVALID_STATE_TRANSITION"
    message = "Invalid render state transition"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition render job from {current} to {requested}")

    def context(self) -> dict[str, Any]:
        return {"current": self.current, "requested": self.requested}
