from shadowstudio.models.base import Base
from shadowstudio.models.render_job import RenderJob
from shadowstudio.models.render_progress_log import RenderProgressLog

__all__ = [
    "Base",
    "RenderJob",
    "RenderProgressLog",
]
