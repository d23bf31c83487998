"""Enhancement job router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import settings
from routers.rate_limit import rate_limit
from services.enhance import InsufficientCreditsError, InvalidEffectError
from services.job_queue import Job, JobQueueBusyError
from services.runtime import AppServices, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


class EnhanceRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    content_type: Literal["image", "video"]
    content_url: str = Field(min_length=1, max_length=4000)
    style_source: Literal["preset", "reference"] = "preset"
    preset_style: Optional[str] = None
    reference_url: Optional[str] = Field(default=None, max_length=4000)
    effect_id: Optional[str] = None
    effect_intensity: int = 100


class EnhanceResponse(BaseModel):
    job_id: str
    status: str
    estimated_seconds: int
    credits: Dict[str, int]


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    stage_label: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str


def _serialize_job(job: Job) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        stage_label=job.stage_label,
        result=job.result.model_dump(mode="json") if job.result else None,
        error=job.error,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat(),
    )


@router.post("", response_model=EnhanceResponse)
async def create_enhance_job(
    request: EnhanceRequest,
    _rate_limit: None = Depends(rate_limit("enhance_create", limit=30, window_seconds=60)),
    services: AppServices = Depends(get_services),
):
    if request.style_source == "reference" and not request.reference_url:
        raise HTTPException(status_code=400, detail="reference_url is required for reference styles")

    try:
        job, available = await services.enhance.submit(
            user_id=request.user_id,
            content_type=request.content_type,
            content_url=request.content_url,
            style_source=request.style_source,
            preset_style=request.preset_style,
            reference_url=request.reference_url,
            effect_id=request.effect_id,
            effect_intensity=request.effect_intensity,
        )
    except InvalidEffectError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "Insufficient credits",
                "required": exc.required,
                "credits": exc.available.as_dict(),
            },
        )
    except JobQueueBusyError:
        raise HTTPException(status_code=503, detail="Server busy, please try again later")

    estimated = (
        settings.ESTIMATED_SECONDS_VIDEO if request.content_type == "video" else settings.ESTIMATED_SECONDS_IMAGE
    )
    return EnhanceResponse(
        job_id=job.id,
        status=job.status,
        estimated_seconds=estimated,
        credits=available.as_dict(),
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_enhance_job(job_id: str, services: AppServices = Depends(get_services)):
    job = services.enhance.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _serialize_job(job)
