from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from backend.domain.models import (
    FALLBACK_SHAPE,
    SHAPES,
    AnalysisOptions,
    Cue,
    RenderOptions,
    VideoQuality,
)


class AnalysisConfig(BaseModel):
    """The ``config`` form field of /process."""
    model_config = ConfigDict(populate_by_name=True)

    recognizer: Literal["pocketSphinx", "phonetic"] = "pocketSphinx"
    export_format: Literal["json", "tsv"] = Field("json", alias="exportFormat")

    def to_options(self) -> AnalysisOptions:
        return AnalysisOptions(recognizer=self.recognizer, export_format=self.export_format)


class RenderConfig(BaseModel):
    """The ``config`` form field of /render. Accepts the desktop client's short keys too."""

    video_resolution: int = Field(
        512,
        ge=16,
        le=4096,
        validation_alias=AliasChoices("videoResolution", "videoRes", "video_resolution"),
    )
    video_background_color: str = Field(
        "#ffffff",
        pattern=r"^(#[0-9a-fA-F]{6}([0-9a-fA-F]{2})?|0x[0-9a-fA-F]{6}|[A-Za-z]+)$",
        validation_alias=AliasChoices("videoBackgroundColor", "videoBgColor", "video_background_color"),
    )
    video_quality: VideoQuality = Field(
        VideoQuality.STANDARD,
        validation_alias=AliasChoices("videoQuality", "video_quality"),
    )
    frame_rate: int = Field(
        30,
        ge=1,
        le=120,
        validation_alias=AliasChoices("videoFPS", "frameRate", "fps", "frame_rate"),
    )

    def to_options(self) -> RenderOptions:
        return RenderOptions(
            resolution=self.video_resolution,
            background_color=self.video_background_color,
            quality=self.video_quality,
            frame_rate=self.frame_rate,
        )


class CueIn(BaseModel):
    start: float = Field(ge=0)
    value: str

    @field_validator("value")
    @classmethod
    def normalize_shape(cls, value: str) -> str:
        # unknown labels render as the rest pose
        value = value.strip().upper()
        return value if value in SHAPES else FALLBACK_SHAPE

    def to_cue(self) -> Cue:
        return Cue(start=self.start, value=self.value)


class ProgressEventOut(BaseModel):
    type: Literal["progress"] = "progress"
    value: float = Field(ge=0, le=1)


class SuccessEventOut(BaseModel):
    type: Literal["success"] = "success"
    result: str


class FailureEventOut(BaseModel):
    type: Literal["failure"] = "failure"
    reason: str
    kind: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    active_jobs: int = 0
    recognizer_installed: bool = False
    recognizer_assets_installed: bool = False


CueList = List[CueIn]
