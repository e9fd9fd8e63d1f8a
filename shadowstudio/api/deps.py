from typing import Annotated

from fastapi import Depends, Request

from shadowstudio.services.render_service import RenderService


def get_render_service(request: Request) -> RenderService:
    """Render service created by the application lifespan."""
    return request.app.state.render_service


RenderServiceDep = Annotated[RenderService, Depends(get_render_service)]
