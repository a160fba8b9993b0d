"""
Typed job failures. Each carries a stable ``kind`` for the event stream and the
HTTP status the API layer answers with.
"""


class JobError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InputMissing(JobError):
    kind = "input_missing"
    status_code = 400


class InputInvalid(JobError):
    kind = "input_invalid"
    status_code = 422


class NormalizationFailed(JobError):
    """Audio conversion failed; recovered by recognizing the raw upload instead."""
    kind = "normalization_failed"


class ToolNotFound(JobError):
    kind = "tool_not_found"


class AssetsMissing(JobError):
    kind = "assets_missing"


class RecognitionFailed(JobError):
    kind = "recognition_failed"
    status_code = 502


class RecognitionHung(JobError):
    kind = "recognition_hung"
    status_code = 504


class RenderFailed(JobError):
    kind = "render_failed"
    status_code = 502


class TimelineCompileError(JobError):
    kind = "timeline_compile_error"


class Cancelled(JobError):
    kind = "cancelled"
    status_code = 499
