"""
Process-wide engine configuration, read once from the environment at startup.
"""
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from backend.domain.models import ProgressSpan

_REPO_ROOT = Path(__file__).resolve().parent.parent


def _default_rhubarb_path() -> Path:
    name = "rhubarb.exe" if sys.platform.startswith("win") else "rhubarb"
    return _REPO_ROOT / "bin" / name


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3001
    workspace_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "lipforge-uploads"
    )
    rhubarb_path: Path = field(default_factory=_default_rhubarb_path)
    # Rhubarb looks up its acoustic models in <binary dir>/res
    rhubarb_assets_dir: Optional[Path] = None
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    watchdog_seconds: float = 120.0
    max_upload_mb: int = 0  # 0 means no limit
    log_level: str = "INFO"
    primary_span: ProgressSpan = ProgressSpan(0.0, 0.5)
    fallback_span: ProgressSpan = ProgressSpan(0.5, 1.0)

    @property
    def assets_dir(self) -> Path:
        if self.rhubarb_assets_dir is not None:
            return self.rhubarb_assets_dir
        return self.rhubarb_path.parent / "res"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024 if self.max_upload_mb else 0


def load_settings() -> Settings:
    """Build settings from LIPFORGE_* environment variables (and MAX_UPLOAD_MB)."""
    env = os.environ
    defaults = Settings()
    assets = env.get("LIPFORGE_RHUBARB_ASSETS")
    return Settings(
        host=env.get("LIPFORGE_HOST", defaults.host),
        port=int(env.get("LIPFORGE_PORT", defaults.port)),
        workspace_root=Path(env.get("LIPFORGE_WORKSPACE_ROOT", defaults.workspace_root)),
        rhubarb_path=Path(env.get("LIPFORGE_RHUBARB_PATH", defaults.rhubarb_path)),
        rhubarb_assets_dir=Path(assets) if assets else None,
        ffmpeg_binary=env.get("LIPFORGE_FFMPEG", defaults.ffmpeg_binary),
        ffprobe_binary=env.get("LIPFORGE_FFPROBE", defaults.ffprobe_binary),
        watchdog_seconds=float(env.get("LIPFORGE_WATCHDOG_SECONDS", defaults.watchdog_seconds)),
        max_upload_mb=int(env.get("MAX_UPLOAD_MB", "0")),
        log_level=env.get("LIPFORGE_LOG_LEVEL", defaults.log_level).upper(),
    )
