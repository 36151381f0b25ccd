from fastapi import APIRouter, Request

from blt import __version__

router = APIRouter()


@router.get("")
def health(request: Request):
    pipeline = request.app.state.pipeline
    return {
        "status": "ok",
        "version": __version__,
        "poller_running": pipeline.poller.running,
        "requests": len(pipeline.registry),
    }
