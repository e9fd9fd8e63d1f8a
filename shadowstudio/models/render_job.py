from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shadowstudio.models.base import Base, TimestampMixin, UUIDMixin


class RenderJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "render_jobs"

    # "clip" for single-clip renders, "batch" for merged multi-clip renders
    kind: Mapped[str] = mapped_column(String(20), default="clip")
    clip_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # JSON array of every clip id, in render order
    clip_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    # Snapshot of the template used, as JSON
    template_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status: pending, processing, completed, failed, cancelled
    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Output (completed only)
    output_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_duration_s: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_time_s: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_time_s: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Error handling (failed only)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RenderJob {self.id} ({self.status})>"
