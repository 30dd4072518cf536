from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..settings import balance_settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    settings = balance_settings()
    return {"status": "ok", "service": settings.service_name}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    # Set by the lifespan once migrations have been attempted
    ready = bool(getattr(request.app.state, "is_ready", False))
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "starting", "service": balance_settings().service_name},
    )


@router.get("/metrics")
async def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
