from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "ShadowStudio Render API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Job store
    job_store_backend: Literal["memory", "database"] = "database"
    database_url: str = "sqlite:///./shadowstudio.db"
    database_echo: bool = False

    # Clip catalog seed (JSON list of clip objects)
    clip_catalog_path: str = ""
    # Fill in has_audio with ffprobe for entries that omit it
    clip_catalog_detect_audio: bool = True

    # Saved custom templates (one JSON file per template)
    templates_dir: str = "./templates"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Filesystem layout
    output_dir: str = "./renders"
    temp_dir: str = "./renders/tmp"

    # Font used by the text-draw filter
    font_path: str = "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc"

    # Render scheduling (1 = serialized transcodes on shared hardware)
    render_max_concurrency: int = 1
    # Wall-clock budget for a single transcoder process
    render_timeout_s: float = 1800.0
    # Seconds to wait after SIGTERM before SIGKILL
    render_kill_grace_s: float = 3.0
    render_batch_max_clips: int = 50
    # Diagnostic lines kept as error detail on failure
    render_error_tail_lines: int = 40

    # Retention
    job_retention_days: int = 30
    recent_jobs_limit: int = 50


@lru_cache
def get_settings() -> Settings:
    return Settings()
