"""FastAPI application for stagedoor."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Literal

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import conversations, membership, read_state, unread
from ._version import __version__
from .errors import ConversationError
from .identity import (
    extract_bearer_token,
    gateway_token_matches,
    get_identity_method_name,
    resolve_identity,
)
from .metrics import metrics
from .models import Conversation, Participant
from .options import StagedoorOptions
from .store import ConversationStore, SqliteStore

logger = logging.getLogger(__name__)

# Seconds clients should wait before retrying an Unavailable response
RETRY_AFTER_SECONDS = 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store from options and close it on shutdown.

    Options preset on app.state are used as given; otherwise they are read
    from the environment for this run only.
    """
    preset = getattr(app.state, "options", None)
    options = preset or StagedoorOptions()
    app.state.options = options
    app.state.store = SqliteStore.open(options.db_path)
    logger.info(
        f"stagedoor {__version__} ready: db={options.db_path}, "
        f"identity={get_identity_method_name(options.gateway_token)}"
    )

    yield

    app.state.store.close()
    if preset is None:
        del app.state.options


app = FastAPI(
    title="stagedoor",
    description="Conversation membership and read-state service",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Normalize ids out of the path: /conversations/{id}/participants/{uid}
    # -> conversations/participants
    parts = [p for p in request.url.path.split("/") if p]
    if parts and parts[0] == "conversations":
        if len(parts) == 1 or parts[1] == "unread-count":
            endpoint = "/".join(parts[:2])
        elif len(parts) == 2:
            endpoint = "conversations/detail"
        else:
            endpoint = f"conversations/{parts[2]}"
        endpoint = f"{request.method} {endpoint}"
    elif request.url.path in ("/health", "/metrics"):
        endpoint = request.url.path[1:]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)

    # Add timing header for debugging
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handling ---


@app.exception_handler(ConversationError)
async def conversation_error_handler(request: Request, exc: ConversationError):
    headers = {}
    if exc.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# --- Request/Response Models ---

UserId = Annotated[str, Field(min_length=1, max_length=255)]


class CreateConversationRequest(BaseModel):
    kind: Literal["direct", "group"] = "group"
    participant_ids: list[UserId] = Field(default_factory=list)
    name: str | None = Field(default=None, max_length=255)


class ConversationInfo(BaseModel):
    conversation_id: str
    kind: str
    name: str | None
    created_by: str | None
    created_at: str
    updated_at: str | None


class ParticipantInfo(BaseModel):
    episode_id: str
    conversation_id: str
    user_id: str
    role: str
    joined_at: str
    left_at: str | None
    last_read_at: str | None
    is_muted: bool

    @classmethod
    def from_model(cls, participant: Participant) -> "ParticipantInfo":
        return cls(**participant.to_dict())


class ConversationDetailResponse(ConversationInfo):
    participants: list[ParticipantInfo]


class CreateConversationResponse(ConversationDetailResponse):
    created: bool


class ConversationSummary(ConversationInfo):
    role: str
    last_read_at: str | None
    is_muted: bool
    unread_count: int | None
    """None when the count could not be fetched."""


class UpdateConversationRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    is_muted: bool | None = None


class AddParticipantRequest(BaseModel):
    user_id: UserId


class UnreadCountResponse(BaseModel):
    count: int


# --- Helpers ---


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_options(request: Request) -> StagedoorOptions:
    return request.app.state.options


def require_user(request: Request, authorization: str | None, x_user_id: str | None) -> str:
    """Resolve the calling user from headers. Returns the user id."""
    result = resolve_identity(authorization, x_user_id, get_options(request).gateway_token)
    if not result.valid or not result.user_id:
        raise HTTPException(result.status_code, result.error or "Unauthorized")
    return result.user_id


def _detail_response(
    conversation: Conversation, participants: list[Participant]
) -> ConversationDetailResponse:
    return ConversationDetailResponse(
        **conversation.to_dict(),
        participants=[ParticipantInfo.from_model(p) for p in participants],
    )


# --- Conversation Endpoints ---


@app.post("/conversations", response_model=CreateConversationResponse, status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    request: Request,
    response: Response,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Create a conversation. An existing direct conversation is returned with 200."""
    user_id = require_user(request, authorization, x_user_id)
    options = get_options(request)

    result = await conversations.create_conversation(
        get_store(request),
        user_id,
        body.participant_ids,
        kind=body.kind,
        name=body.name,
        timeout=options.store_timeout,
    )
    if not result.created:
        response.status_code = 200

    return CreateConversationResponse(
        **result.conversation.to_dict(),
        participants=[ParticipantInfo.from_model(p) for p in result.participants],
        created=result.created,
    )


@app.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """List the caller's conversations with unread counts."""
    user_id = require_user(request, authorization, x_user_id)
    options = get_options(request)
    store = get_store(request)

    rows = await conversations.list_conversations(store, user_id, timeout=options.store_timeout)
    counts = await unread.get_unread_counts(
        store,
        user_id,
        timeout=options.store_timeout,
        fanout_limit=options.fanout_limit,
        metrics=metrics,
    )

    return [
        ConversationSummary(
            **conversation.to_dict(),
            role=mine.role,
            last_read_at=mine.to_dict()["last_read_at"],
            is_muted=mine.is_muted,
            unread_count=counts.get(conversation.conversation_id),
        )
        for conversation, mine in rows
    ]


# Declared before /conversations/{conversation_id} so it is not captured as an id
@app.get("/conversations/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Total unread messages across the caller's conversations.

    Never fails: an unidentified caller gets a count of 0 rather than an
    error, the same as a caller in no conversations.
    """
    options = get_options(request)
    identity = resolve_identity(authorization, x_user_id, options.gateway_token)
    if not identity.valid or not identity.user_id:
        logger.debug(f"Unread count for unidentified caller: {identity.error}")
        return UnreadCountResponse(count=0)

    count = await unread.get_unread_count(
        get_store(request),
        identity.user_id,
        timeout=options.store_timeout,
        fanout_limit=options.fanout_limit,
        metrics=metrics,
    )
    return UnreadCountResponse(count=count)


@app.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Get conversation details. Requires participation."""
    user_id = require_user(request, authorization, x_user_id)
    details = await conversations.get_conversation(
        get_store(request),
        conversation_id,
        user_id,
        timeout=get_options(request).store_timeout,
    )
    return _detail_response(details.conversation, details.participants)


@app.patch("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Rename a group (admins) and/or mute it for yourself."""
    user_id = require_user(request, authorization, x_user_id)
    timeout = get_options(request).store_timeout
    store = get_store(request)

    if "name" not in body.model_fields_set and body.is_muted is None:
        raise HTTPException(400, "Nothing to update: provide name and/or is_muted")

    if "name" in body.model_fields_set:
        await conversations.rename_conversation(
            store, conversation_id, user_id, body.name, timeout=timeout
        )
    if body.is_muted is not None:
        await membership.set_muted(store, conversation_id, user_id, body.is_muted, timeout=timeout)

    details = await conversations.get_conversation(store, conversation_id, user_id, timeout=timeout)
    return _detail_response(details.conversation, details.participants)


@app.delete("/conversations/{conversation_id}", response_model=ParticipantInfo)
async def leave_conversation(
    conversation_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Leave a group conversation. Returns the ended episode."""
    user_id = require_user(request, authorization, x_user_id)
    ended = await membership.leave_conversation(
        get_store(request),
        conversation_id,
        user_id,
        timeout=get_options(request).store_timeout,
    )
    return ParticipantInfo.from_model(ended)


# --- Participant Endpoints ---


@app.get("/conversations/{conversation_id}/participants", response_model=list[ParticipantInfo])
async def list_participants(
    conversation_id: str,
    request: Request,
    include_left: bool = Query(default=False),
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """List participants. Requires participation."""
    user_id = require_user(request, authorization, x_user_id)
    participants = await membership.list_participants(
        get_store(request),
        conversation_id,
        user_id,
        include_left,
        timeout=get_options(request).store_timeout,
    )
    return [ParticipantInfo.from_model(p) for p in participants]


@app.post(
    "/conversations/{conversation_id}/participants",
    response_model=ParticipantInfo,
    status_code=201,
)
async def add_participant(
    conversation_id: str,
    body: AddParticipantRequest,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Add a member to a group. Requires admin."""
    user_id = require_user(request, authorization, x_user_id)
    participant = await membership.add_participant(
        get_store(request),
        conversation_id,
        user_id,
        body.user_id,
        timeout=get_options(request).store_timeout,
    )
    return ParticipantInfo.from_model(participant)


@app.delete(
    "/conversations/{conversation_id}/participants/{target_user_id}",
    response_model=ParticipantInfo,
)
async def remove_participant(
    conversation_id: str,
    target_user_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Remove a participant. Requires admin unless removing yourself."""
    user_id = require_user(request, authorization, x_user_id)
    ended = await membership.remove_participant(
        get_store(request),
        conversation_id,
        user_id,
        target_user_id,
        timeout=get_options(request).store_timeout,
    )
    return ParticipantInfo.from_model(ended)


@app.post("/conversations/{conversation_id}/read", response_model=ParticipantInfo)
async def mark_as_read(
    conversation_id: str,
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Mark the conversation as read up to now."""
    user_id = require_user(request, authorization, x_user_id)
    participant = await read_state.mark_as_read(
        get_store(request),
        conversation_id,
        user_id,
        timeout=get_options(request).store_timeout,
    )
    return ParticipantInfo.from_model(participant)


# --- Ops Endpoints ---


@app.get("/health")
def health(request: Request):
    """Health check endpoint."""
    info = get_store(request).get_info()
    return {"status": "ok", "version": __version__, "store": info.store_type}


@app.get("/metrics")
def get_metrics(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires the gateway token when one is configured."""
    gateway_token = get_options(request).gateway_token
    if gateway_token:
        token = extract_bearer_token(authorization)
        if not token:
            raise HTTPException(401, "Authorization: Bearer <token> header required")
        if not gateway_token_matches(token, gateway_token):
            raise HTTPException(403, "Invalid gateway token")

    return metrics.to_dict()
