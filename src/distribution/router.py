"""Distribution profile and job API routes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import require_tenant_context, require_workspace_role
from src.auth.jwt import AuthContext
from src.auth.roles import ROLE_ADMIN
from src.distribution.channels import channel_definitions
from src.distribution.profiles import ProfileSummary, list_profiles, upsert_profile
from src.distribution.scheduler import (
    ScheduleCommand,
    list_upcoming_jobs,
    load_job_payload,
    load_job_result,
    schedule_or_update,
)
from src.schemas.distribution import (
    ChannelDefinitionResponse,
    JobResponse,
    ProfileResponse,
    ProfileUpsertRequest,
    ScheduleJobRequest,
    ScheduleJobResponse,
    UpcomingJobsResponse,
)
from src.storage.db import get_session
from src.storage.models import DistributionJob
from src.storage.tenant import TenantContext, tenant_transaction


router = APIRouter(prefix="/distribution", tags=["distribution"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


def _profile_response(summary: ProfileSummary) -> ProfileResponse:
    return ProfileResponse(
        id=summary.id,
        channel=summary.channel,
        label=summary.label,
        has_token=summary.has_token,
        external_id=summary.external_id,
        space_id=summary.space_id,
        updated_at=_iso(summary.updated_at),
    )


def _job_response(job: DistributionJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        content_item_id=job.content_item_id,
        content_title=job.content_item.title if job.content_item is not None else None,
        approval_request_id=job.approval_request_id,
        channel=job.channel,
        status=job.status,
        scheduled_for=_iso(job.scheduled_for),
        last_attempt_at=_iso(job.last_attempt_at),
        payload=load_job_payload(job),
        result=load_job_result(job),
        created_at=_iso(job.created_at) or "",
    )


@router.get("/channels", response_model=List[ChannelDefinitionResponse])
def read_channels(
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> List[ChannelDefinitionResponse]:
    connected = {profile.channel for profile in list_profiles(session, tenant)}
    return [
        ChannelDefinitionResponse(
            channel=definition.channel,
            label=definition.label,
            description=definition.description,
            max_characters=definition.max_characters,
            media_hint=definition.media_hint,
            connected=definition.channel in connected,
        )
        for definition in channel_definitions()
    ]


@router.get("/profiles", response_model=List[ProfileResponse])
def read_profiles(
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> List[ProfileResponse]:
    return [_profile_response(summary) for summary in list_profiles(session, tenant)]


@router.put("/profiles", response_model=ProfileResponse)
def write_profile(
    payload: ProfileUpsertRequest,
    auth: AuthContext = Depends(require_workspace_role(ROLE_ADMIN)),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> ProfileResponse:
    summary = upsert_profile(
        session,
        tenant,
        actor_role=auth.role,
        channel=payload.channel,
        label=payload.label,
        access_token=payload.access_token,
        external_id=payload.external_id,
        space_id=payload.space_id,
    )
    return _profile_response(summary)


@router.get("/jobs", response_model=UpcomingJobsResponse)
def read_upcoming_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> UpcomingJobsResponse:
    jobs = list_upcoming_jobs(session, tenant, limit=limit)
    return UpcomingJobsResponse(items=[_job_response(job) for job in jobs])


@router.post("/jobs", response_model=ScheduleJobResponse)
def schedule_job(
    payload: ScheduleJobRequest,
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> ScheduleJobResponse:
    result = schedule_or_update(session, tenant, ScheduleCommand(**payload.model_dump()))
    with tenant_transaction(session, tenant):
        return ScheduleJobResponse(job=_job_response(result.job), created=result.created, message=result.message)
