from __future__ import annotations

from datetime import timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import StreamingResponse

from chatrelay.api.schemas import (
    AuthResponse,
    ChatRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
)
from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthContext
from chatrelay.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
)
from chatrelay.service.orchestrator import TurnRequest
from chatrelay.service.prompts import RequestHints
from chatrelay.service.runtime import get_runtime
from chatrelay.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def get_user(
    authorization: Optional[str] = Header(None),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_header or session_cookie)
    if not ctx:
        raise AuthenticationError("invalid session")
    return ctx


def _request_hints(request: Request) -> RequestHints:
    headers = request.headers
    return RequestHints(
        latitude=headers.get("X-Geo-Latitude"),
        longitude=headers.get("X-Geo-Longitude"),
        city=headers.get("X-Geo-City"),
        country=headers.get("X-Geo-Country"),
    )


def _parse_last_event_id(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        return max(0, int(value))
    except ValueError:
        raise BadRequestError("Last-Event-ID must be an integer", detail={"value": value})


def _parse_chat_id(value: Optional[str]) -> str:
    if not value:
        raise BadRequestError("Parameter id is required.")
    try:
        return str(UUID(value))
    except ValueError:
        raise BadRequestError("Parameter id must be a UUID.", detail={"id": value})


def _get_owned_chat(runtime, chat_id: str, principal: AuthContext):
    chat = runtime.store.get_chat_by_id(chat_id)
    if chat is None:
        raise NotFoundError("chat not found", detail={"chat_id": chat_id})
    if chat.user_id != principal.user_id:
        raise ForbiddenError("chat belongs to another user", detail={"chat_id": chat_id})
    return chat


def _stream_response(frames, stream_id: str) -> StreamingResponse:
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Stream-Id": stream_id},
    )


@router.post("/chat", tags=["chat"])
async def chat(
    body: ChatRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Start a chat turn and stream its events as server-sent events.

    Raises:
        400: If the body is malformed
        401: If authentication fails
        403: If the chat belongs to another user
        429: If a daily message or request ceiling is reached
    """
    runtime = get_runtime()
    turn = await runtime.orchestrator.prepare_turn(
        principal,
        TurnRequest(
            chat_id=str(body.id),
            message_id=str(body.message.id),
            parts=[part.model_dump() for part in body.message.parts],
            selected_chat_model=body.selectedChatModel.value,
            visibility=body.selectedVisibilityType.value,
        ),
        _request_hints(request),
    )
    orchestrator = runtime.orchestrator
    frames = await runtime.relay.open_or_resume(
        turn.stream_id, lambda: orchestrator.run_turn(turn)
    )
    return _stream_response(frames, turn.stream_id)


@router.get("/chat/{chat_id}/stream", tags=["chat"])
async def resume_chat_stream(
    chat_id: str,
    principal: AuthContext = Depends(get_user),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
):
    """Reattach to the most recent stream of a chat.

    Replays events after ``Last-Event-ID`` and follows the live stream.
    Returns 204 when there is nothing to resume.
    """
    runtime = get_runtime()
    chat = _get_owned_chat(runtime, _parse_chat_id(chat_id), principal)
    after_seq = _parse_last_event_id(last_event_id)
    stream_ids = runtime.store.list_stream_ids_by_chat_id(chat.id)
    if not stream_ids:
        return Response(status_code=204)
    stream_id = stream_ids[-1]
    frames = await runtime.relay.resume(stream_id, after_seq=after_seq)
    if frames is None:
        return Response(status_code=204)
    return _stream_response(frames, stream_id)


@router.delete("/chat", tags=["chat"])
async def delete_chat(
    chat_id: Optional[str] = Query(None, alias="id"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    chat = _get_owned_chat(runtime, _parse_chat_id(chat_id), principal)
    deleted = runtime.store.delete_chat_by_id(chat.id)
    if deleted is None:
        raise NotFoundError("chat not found", detail={"chat_id": chat.id})
    logger.info("chat_deleted", chat_id=deleted.id, user_id=principal.user_id)
    return deleted.to_dict()


def _apply_session_cookie(response: Response, session: Session) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        "session_id",
        session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _auth_envelope(response: Response, user: User, session: Session) -> Envelope:
    _apply_session_cookie(response, session)
    payload = AuthResponse(
        user_id=user.id,
        user_type=user.user_type,
        session_id=session.id,
        session_expires_at=session.expires_at,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/auth/guest", response_model=Envelope, tags=["auth"])
async def guest_login(response: Response):
    runtime = get_runtime()
    user, session = await runtime.auth.guest()
    return _auth_envelope(response, user, session)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    runtime = get_runtime()
    user, session = await runtime.auth.register(body.email, body.password)
    return _auth_envelope(response, user, session)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    user, session = await runtime.auth.login(body.email, body.password)
    return _auth_envelope(response, user, session)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.revoke(principal.session_id)
    response.delete_cookie("session_id", path="/")
    return Envelope(status="ok", data={"message": "logged out"})
