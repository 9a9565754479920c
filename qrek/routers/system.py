"""Operational endpoints: liveness probe and service descriptor."""

from fastapi import APIRouter, Request

from qrek import __version__


SERVICE_NAME = "qrek"

router = APIRouter(tags=["system"])


@router.get("/health")
def health_check() -> dict[str, str]:
    """Liveness probe; answering at all means the listener is serving."""

    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/")
def describe_service(request: Request) -> dict[str, str]:
    settings = request.app.state.settings
    return {
        "service": SERVICE_NAME,
        "version": __version__,
        "listen_at": str(settings.listen_at),
    }
