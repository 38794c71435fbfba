"""FastAPI app exposing contact duplicate detection and merge.

Storage is reached only through the repository dependencies below, so tests
(and other deployments) can swap them with ``app.dependency_overrides``.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .db import get_session
from .logging_config import setup_logging
from .pipelines.duplicates import DuplicateFinder, GroupBy
from .pipelines.merge import MergeError, MergeExecutor, MergeRequest, MergeValidationError
from .pipelines.normalization import GMAIL_RULE, register_mailbox_rule
from .repository import ActivityRecord, ContactNotFoundError, SqlActivityLog, SqlContactRepository

logger = logging.getLogger(__name__)


# Pydantic response models
class ApiModel(BaseModel):
    """Base for camelCase wire models."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ContactPreviewDTO(ApiModel):
    """Key fields of a duplicate group member."""
    id: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    status: str | None = None
    updated_at: str | None = None


class DuplicateGroupDTO(ApiModel):
    """Contacts sharing one identity key."""
    key: str
    kind: str
    count: int
    ids: list[str]
    preview: list[ContactPreviewDTO] = Field(default_factory=list)


class DuplicatesResponse(ApiModel):
    """Duplicate scan response."""
    ok: bool = True
    items: list[DuplicateGroupDTO]
    by: str


class ContactUpdateDTO(ApiModel):
    """Field set written to the surviving contact."""
    email: str | None = None
    full_name: str | None = None
    phone: str | None = None
    status: str | None = None


class DryRunMergeResponse(ApiModel):
    """Merge preview response."""
    ok: bool = True
    dry_run: bool = True
    survivor_id: str
    merge_ids: list[str]
    will_update: ContactUpdateDTO
    will_delete: list[str]


class MergeResponse(ApiModel):
    """Applied merge response."""
    ok: bool = True
    survivor_id: str
    deleted: list[str]
    updated: ContactUpdateDTO


class ActivityDTO(ApiModel):
    """Contact activity feed entry."""
    id: int
    type: str
    at: str | None = None
    direction: str | None = None
    body: str
    meta: dict | None = None


class ActivitiesResponse(ApiModel):
    """Contact activity feed."""
    ok: bool = True
    items: list[ActivityDTO]


class ActivityCreateRequest(ApiModel):
    """New sms/call/email/note entry for a contact."""
    type: Literal["sms", "call", "email", "note"]
    body: str = Field(min_length=1)
    direction: Literal["inbound", "outbound"] | None = None
    subject: str | None = None


class ActivityCreatedResponse(ApiModel):
    """Logged activity response."""
    ok: bool = True
    item: ActivityDTO


def activity_dto(activity: ActivityRecord) -> ActivityDTO:
    return ActivityDTO(
        id=activity.id,
        type=activity.type or "note",
        at=activity.created_at.isoformat() if activity.created_at else None,
        direction=activity.direction,
        body=activity.content,
        meta=activity.metadata,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    for domain in settings.dedupe.alias_domains:
        register_mailbox_rule(domain, GMAIL_RULE)
    logger.info("Application starting up")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title="Boreal CRM Contact Dedupe",
    version=settings.version,
    description="Duplicate contact detection and merge for the Boreal Financial CRM",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies
def get_contact_repository(session: AsyncSession = Depends(get_session)) -> SqlContactRepository:
    return SqlContactRepository(session)


def get_activity_log(session: AsyncSession = Depends(get_session)) -> SqlActivityLog:
    return SqlActivityLog(session)


def get_duplicate_finder(
    repository: SqlContactRepository = Depends(get_contact_repository),
) -> DuplicateFinder:
    return DuplicateFinder(repository)


def get_merge_executor(
    repository: SqlContactRepository = Depends(get_contact_repository),
    audit: SqlActivityLog = Depends(get_activity_log),
) -> MergeExecutor:
    return MergeExecutor(repository, audit)


# Exception handlers
_FIELD_REASONS = {
    "survivorId": "survivorId_required",
    "mergeIds": "mergeIds_required",
    "by": "invalid_group_by",
}


def validation_reason(exc: RequestValidationError) -> str:
    """Short machine-readable reason for the first recognised bad field."""
    for error in exc.errors():
        for part in error.get("loc", ()):
            if part in _FIELD_REASONS:
                return _FIELD_REASONS[part]
    return "invalid_request"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Reject malformed requests with 400 before any business logic runs."""
    reason = validation_reason(exc)
    logger.warning(f"Rejected {request.method} {request.url.path}: {reason}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "reason": reason},
    )


@app.exception_handler(MergeValidationError)
async def merge_validation_handler(request: Request, exc: MergeValidationError):
    """Handle merge requests with nothing to merge."""
    logger.warning(f"Merge validation error: {exc.reason}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "reason": exc.reason},
    )


@app.exception_handler(ContactNotFoundError)
async def not_found_handler(request: Request, exc: ContactNotFoundError):
    """Handle references to contacts that do not exist."""
    logger.warning(f"Not found: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"ok": False, "reason": "not_found"},
    )


@app.exception_handler(MergeError)
async def merge_error_handler(request: Request, exc: MergeError):
    """Handle storage failures while applying a merge."""
    logger.error(f"Merge error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"ok": False, "error": "merge_failed"},
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "find_duplicates": "/contacts/duplicates?by=email|phone|both",
            "merge": "/contacts/merge",
            "activities": "/contacts/{contact_id}/activities",
            "log_activity": "POST /contacts/{contact_id}/activities",
            "docs": "/docs",
        },
    }


@app.get("/contacts/duplicates", response_model=DuplicatesResponse)
async def find_duplicates(
    by: GroupBy | None = Query(default=None, description="Grouping mode"),
    finder: DuplicateFinder = Depends(get_duplicate_finder),
):
    """List groups of contacts sharing a canonical email and/or phone.

    A failed scan answers 500 with an empty ``items`` list; callers must
    treat that as unknown state rather than "no duplicates".
    """
    group_by = by or GroupBy(settings.dedupe.default_group_by)
    scan = await finder.find(group_by)

    if not scan.ok:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "items": [], "by": group_by.value, "error": scan.error},
        )

    return DuplicatesResponse(
        items=[
            DuplicateGroupDTO(
                key=g.key,
                kind=g.kind,
                count=g.count,
                ids=g.ids,
                preview=[ContactPreviewDTO.model_validate(p) for p in g.preview],
            )
            for g in scan.groups
        ],
        by=group_by.value,
    )


@app.post("/contacts/merge", response_model=DryRunMergeResponse | MergeResponse)
async def merge_contacts(
    request: MergeRequest,
    executor: MergeExecutor = Depends(get_merge_executor),
):
    """Merge duplicate contacts into a survivor.

    With ``dryRun`` the computed update and the ids that would be deleted
    are returned and nothing is written. Otherwise the survivor is updated,
    the duplicates are deleted and an audit entry is logged, atomically.
    """
    outcome = await executor.merge(request)
    plan = outcome.plan
    update = ContactUpdateDTO.model_validate(plan.update)

    if not outcome.applied:
        return DryRunMergeResponse(
            survivor_id=plan.survivor_id,
            merge_ids=plan.loser_ids,
            will_update=update,
            will_delete=plan.loser_ids,
        )

    return MergeResponse(
        survivor_id=plan.survivor_id,
        deleted=plan.loser_ids,
        updated=update,
    )


@app.get("/contacts/{contact_id}/activities", response_model=ActivitiesResponse)
async def list_activities(
    contact_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    activity_log: SqlActivityLog = Depends(get_activity_log),
):
    """Activity feed of a contact, newest first (merge audit entries included)."""
    try:
        activities = await activity_log.list_activities(
            contact_id,
            limit=limit or settings.dedupe.activity_limit,
        )
    except Exception as e:
        logger.error(f"Failed to fetch activities for {contact_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "activities_fetch_failed"},
        )

    return ActivitiesResponse(items=[activity_dto(a) for a in activities])


@app.post(
    "/contacts/{contact_id}/activities",
    response_model=ActivityCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def log_activity(
    contact_id: str,
    request: ActivityCreateRequest,
    repository: SqlContactRepository = Depends(get_contact_repository),
    activity_log: SqlActivityLog = Depends(get_activity_log),
):
    """Append an sms, call, email or note entry to a contact's feed."""
    try:
        async with repository.unit_of_work():
            activity = await activity_log.log_activity(
                contact_id,
                type=request.type,
                body=request.body,
                direction=request.direction,
                subject=request.subject,
            )
    except ContactNotFoundError:
        raise
    except Exception as e:
        logger.error(f"Failed to log activity for {contact_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "activities_write_failed"},
        )

    logger.info(f"Logged {activity.type} activity {activity.id} for {contact_id}")
    return ActivityCreatedResponse(item=activity_dto(activity))
