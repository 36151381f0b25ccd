"""BLT study endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from blt.api.schemas import BltStudyRequestBody, StudyStatus, SubmissionResponse
from blt.archive import (
    AmbiguousStudyMatch,
    ArchiveError,
    StudyNotFound,
    TransientJobError,
)
from blt.models import InvalidRequestError
from blt.runner import RequestHandler
from blt.utils.atomic import SnapshotError
from blt.utils.logging import get_logger

logger = get_logger("api.studies")

router = APIRouter()


def _handler(request: Request) -> RequestHandler:
    return request.app.state.pipeline.handler


@router.post("/studies", status_code=201, response_model=SubmissionResponse)
async def create_study(request: Request, body: BltStudyRequestBody):
    """Find the study on the source modality and start transferring it."""
    handler = _handler(request)
    try:
        result = await handler.submit(body.to_request())
    except InvalidRequestError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StudyNotFound as e:
        logger.info("blt_request_rejected", reason="not_found", error=str(e))
        raise HTTPException(status_code=404, detail=str(e))
    except AmbiguousStudyMatch as e:
        logger.info("blt_request_rejected", reason="ambiguous", error=str(e))
        raise HTTPException(status_code=409, detail=str(e))
    except TransientJobError as e:
        logger.warning("archive_unreachable", error=str(e))
        raise HTTPException(status_code=502, detail=f"Archive unreachable: {e}")
    except ArchiveError as e:
        logger.error("archive_request_failed", error=str(e))
        raise HTTPException(status_code=502, detail=f"Archive error: {e}")
    except SnapshotError as e:
        logger.error("registry_save_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Request state cannot be saved")

    return result.to_dict()


@router.get("/studies", response_model=list[StudyStatus])
def list_studies(request: Request):
    return [state.to_status_dict() for state in _handler(request).list_studies()]


@router.get("/studies/{request_id}", response_model=StudyStatus)
def get_study(request: Request, request_id: str):
    try:
        state = _handler(request).get_study(request_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Request not found")
    return state.to_status_dict()


@router.delete("/studies/{request_id}", response_model=StudyStatus)
async def abandon_study(
    request: Request,
    request_id: str,
    reason: str = Query(default="abandoned by operator"),
):
    """Stop polling a request. The archive's jobs keep running."""
    try:
        state = await _handler(request).abandon(request_id, reason)
    except KeyError:
        raise HTTPException(status_code=404, detail="Request not found")
    return state.to_status_dict()


@router.get("/summary")
def summary(request: Request) -> dict[str, int]:
    return _handler(request).summary()
