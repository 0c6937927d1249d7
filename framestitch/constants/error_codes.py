"""Error codes dictionary for render failures.

This is the single source of truth for all error codes, their retryability,
and suggested recovery hints. Used by ``FramestitchError.to_dict()`` to
produce machine-readable failure reports for callers.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    stage: str
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Job construction
    # ==========================================================================
    "INVALID_CONFIGURATION": {
        "retryable": False,
        "stage": "construction",
        "suggested_fix": "Fix the timeline bounds or composition structure and resubmit",
    },
    # ==========================================================================
    # Capture
    # ==========================================================================
    "CAPTURE_FAILED": {
        "retryable": True,
        "stage": "capturing",
        "suggested_fix": "Check that the render surface is mounted and can encode frames",
    },
    "BUFFER_CLOSED": {
        "retryable": False,
        "stage": "capturing",
    },
    # ==========================================================================
    # Compile (always raised before any encoder process is spawned)
    # ==========================================================================
    "COMPILE_FAILED": {
        "retryable": False,
        "stage": "compile",
    },
    "INVALID_FRAME_RANGE": {
        "retryable": False,
        "stage": "compile",
        "suggested_fix": "Every node needs 0 <= start_frame < end_frame <= total_frames",
    },
    "LABEL_COLLISION": {
        "retryable": False,
        "stage": "compile",
    },
    "UNRESOLVED_LABEL": {
        "retryable": False,
        "stage": "compile",
    },
    "MISSING_ASSET": {
        "retryable": False,
        "stage": "compile",
        "suggested_fix": "Resolve asset paths before submitting the composition",
    },
    "MISSING_ANCHOR": {
        "retryable": False,
        "stage": "compile",
        "suggested_fix": "Add a sync_anchor node with the referenced anchor_id",
    },
    # ==========================================================================
    # Encoding
    # ==========================================================================
    "ENCODER_FAILED": {
        "retryable": True,
        "stage": "encoding",
        "suggested_fix": "Inspect the captured ffmpeg stderr",
    },
    "ENCODER_NOT_AVAILABLE": {
        "retryable": False,
        "stage": "encoding",
        "suggested_fix": "Install ffmpeg or set FRAMESTITCH_FFMPEG_PATH",
    },
    "MISSING_OUTPUT": {
        "retryable": True,
        "stage": "encoding",
    },
    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    "RENDER_CANCELLED": {
        "retryable": True,
        "stage": "any",
    },
    "INVALID_STATE_TRANSITION": {
        "retryable": False,
        "stage": "any",
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and optional hints
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
