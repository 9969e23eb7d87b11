"""
Landing page, rendered through the view engine configured by the pipeline.
"""

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from core.dependencies import SettingsDep

router = APIRouter(tags=["index"])


@router.head("/", include_in_schema=False)
@router.get("/", response_class=HTMLResponse)
async def index(request: Request, settings: SettingsDep):
    return request.state.templates.TemplateResponse(
        request,
        "index.html",
        {"title": settings.APP_NAME},
    )
