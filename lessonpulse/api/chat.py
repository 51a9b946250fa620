"""
Live support chat: REST endpoints plus WebSocket channels for chat sessions and doctor dashboards
"""
from typing import Awaitable, Callable, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.audit import audit_service
from lessonpulse.auth import CurrentUser, Role, require_role, require_role_with_csrf
from lessonpulse.database import AsyncSessionLocal, get_db, session_scope
from lessonpulse.db_models import LiveChatSession, Student, Teacher
from lessonpulse.models import (
    AvailabilityUpdate,
    ChatMessageCreate,
    ChatMessageOut,
    ChatSessionCreate,
    ChatSessionOut,
    ChatStatus,
    DoctorOut,
)
from lessonpulse.realtime import SocketOwner, manager, chat_channel, doctors_channel
from lessonpulse.sessions import SessionError, session_manager
from lessonpulse.services import chat_service
from lessonpulse.api.common import enforce_rate_limit, not_found, service_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])
ws_router = APIRouter(tags=["Chat"])

PARTICIPANTS = [Role.STUDENT, Role.DOCTOR]


def session_view(session: LiveChatSession, viewer: CurrentUser) -> ChatSessionOut:
    out = ChatSessionOut.model_validate(session)
    if session.is_anonymous and viewer.id != session.student_id:
        out.student_id = None
    return out


async def participant_session(db: AsyncSession, user: CurrentUser, session_id: str) -> LiveChatSession:
    session = await chat_service.get_for_participant(db, user, session_id)
    if session is None:
        raise not_found("Chat session")
    return session


async def sender_name(db: AsyncSession, user: CurrentUser) -> str:
    if user.role == Role.STUDENT:
        account = await db.get(Student, user.id)
        return account.full_name if account else "Student"
    account = await db.get(Teacher, user.id)
    return account.name if account else "Doctor"


@router.post("/sessions", response_model=ChatSessionOut, status_code=status.HTTP_201_CREATED)
async def start_chat(
    data: ChatSessionCreate,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    """
    Open a chat and notify the school's available doctors
    Requires: student role
    """
    try:
        student = await db.get(Student, current_user.id)
        if student is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account no longer exists")
        session = await chat_service.create_session(db, student, data.is_anonymous)
        await audit_service.log_activity(
            user_id=current_user.id, action="start_chat", resource="live_chat_session",
            resource_id=session.id, db=db,
        )
        return session_view(session, current_user)
    except Exception as e:
        raise service_error(e, "start chat")


@router.get("/sessions", response_model=List[ChatSessionOut])
async def list_chats(
    chat_status: Optional[ChatStatus] = None,
    current_user: CurrentUser = Depends(require_role(PARTICIPANTS)),
    db: AsyncSession = Depends(get_db)
):
    """Students get their own chats; doctors get the school's chats (waiting by default)"""
    if current_user.role == Role.STUDENT:
        sessions = await chat_service.list_for_student(db, current_user.id)
    else:
        sessions = await chat_service.list_sessions(db, current_user.school, chat_status or ChatStatus.WAITING)
    return [session_view(session, current_user) for session in sessions]


@router.get("/sessions/{session_id}", response_model=ChatSessionOut)
async def get_chat(
    session_id: str,
    current_user: CurrentUser = Depends(require_role(PARTICIPANTS)),
    db: AsyncSession = Depends(get_db)
):
    return session_view(await participant_session(db, current_user, session_id), current_user)


@router.post("/sessions/{session_id}/join", response_model=ChatSessionOut)
async def join_chat(
    session_id: str,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.DOCTOR])),
    db: AsyncSession = Depends(get_db)
):
    """
    Take a waiting chat. Only one doctor can win; the others get 409.
    Requires: doctor role
    """
    try:
        session = await chat_service.join(db, current_user, session_id)
        await audit_service.log_activity(
            user_id=current_user.id, action="join_chat", resource="live_chat_session",
            resource_id=session.id, db=db,
        )
        return session_view(session, current_user)
    except Exception as e:
        raise service_error(e, "join chat")


@router.post("/sessions/{session_id}/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
async def post_message(
    request: Request,
    session_id: str,
    data: ChatMessageCreate,
    current_user: CurrentUser = Depends(require_role_with_csrf(PARTICIPANTS)),
    db: AsyncSession = Depends(get_db)
):
    await enforce_rate_limit(request, "chat", user_id=current_user.id)
    try:
        session = await participant_session(db, current_user, session_id)
        name = await sender_name(db, current_user)
        return await chat_service.post_message(db, current_user, session, name, data.message)
    except Exception as e:
        raise service_error(e, "send message")


@router.get("/sessions/{session_id}/messages", response_model=List[ChatMessageOut])
async def list_messages(
    session_id: str,
    current_user: CurrentUser = Depends(require_role(PARTICIPANTS)),
    db: AsyncSession = Depends(get_db)
):
    """Messages in order, visible to the chat's participants only"""
    session = await participant_session(db, current_user, session_id)
    return await chat_service.messages(db, session.id)


@router.post("/sessions/{session_id}/end", response_model=ChatSessionOut)
async def end_chat(
    session_id: str,
    current_user: CurrentUser = Depends(require_role_with_csrf(PARTICIPANTS)),
    db: AsyncSession = Depends(get_db)
):
    try:
        session = await participant_session(db, current_user, session_id)
        if current_user.role == Role.DOCTOR and session.doctor_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the assigned doctor can end this chat")
        session = await chat_service.end(db, session)
        await audit_service.log_activity(
            user_id=current_user.id, action="end_chat", resource="live_chat_session",
            resource_id=session.id, db=db,
        )
        return session_view(session, current_user)
    except Exception as e:
        raise service_error(e, "end chat")


@router.get("/doctors", response_model=List[DoctorOut])
async def available_doctors(
    current_user: CurrentUser = Depends(require_role([Role.STUDENT, Role.ADMIN, Role.DOCTOR])),
    db: AsyncSession = Depends(get_db)
):
    return await chat_service.available_doctors(db, current_user.school)


@router.put("/availability", response_model=DoctorOut)
async def set_availability(
    data: AvailabilityUpdate,
    current_user: CurrentUser = Depends(require_role_with_csrf([Role.DOCTOR])),
    db: AsyncSession = Depends(get_db)
):
    return await chat_service.set_availability(db, current_user.id, data.is_available)


# ==================== WebSockets ====================

async def _authenticate_socket(token: Optional[str]) -> Optional[CurrentUser]:
    if not token:
        return None
    async with session_scope() as db:
        try:
            check = await session_manager.validate(db, token, check_fingerprint=False)
        except SessionError as e:
            logger.info(f"WebSocket rejected: {e.detail}")
            return None
        session = check.session
        return CurrentUser(
            id=session.user_id,
            user_type=session.user_type,
            role=session.role,
            school=session.school,
            session_id=session.id,
        )


async def _is_chat_participant(user: CurrentUser, session_id: str) -> bool:
    async with AsyncSessionLocal() as db:
        return await chat_service.get_for_participant(db, user, session_id) is not None


async def _serve(websocket: WebSocket, channel: str, user: CurrentUser, token: str,
                 still_allowed: Optional[Callable[[], Awaitable[bool]]] = None):
    """
    Relay channel events until the client leaves. Access is checked again right
    after joining the channel and on every frame the client sends, so a revoked
    session or a chat taken by another doctor ends the connection.
    """
    owner = SocketOwner(user_id=user.id, role=user.role.value, session_id=user.session_id)
    await manager.connect(channel, websocket, owner)
    try:
        if still_allowed is not None and not await still_allowed():
            await _reject(websocket, channel)
            return
        while True:
            frame = await websocket.receive_text()
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            if await _authenticate_socket(token) is None or (still_allowed and not await still_allowed()):
                await _reject(websocket, channel)
                break
            if frame == "ping":
                await websocket.send_json({"event": "pong", "data": None})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(channel, websocket)


async def _reject(websocket: WebSocket, channel: str):
    manager.disconnect(channel, websocket)
    # A revocation may already have closed it through the manager
    if websocket.application_state == WebSocketState.CONNECTED:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)


@ws_router.websocket("/ws/chat/{session_id}")
async def chat_socket(websocket: WebSocket, session_id: str, token: Optional[str] = None):
    """Messages and status changes of one chat session"""
    user = await _authenticate_socket(token)
    if user is None or user.role not in PARTICIPANTS:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not await _is_chat_participant(user, session_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await _serve(websocket, chat_channel(session_id), user, token,
                 still_allowed=lambda: _is_chat_participant(user, session_id))


@ws_router.websocket("/ws/doctors")
async def doctors_socket(websocket: WebSocket, token: Optional[str] = None):
    """New waiting chats for the doctor's school"""
    user = await _authenticate_socket(token)
    if user is None or user.role != Role.DOCTOR or not user.school:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await _serve(websocket, doctors_channel(user.school), user, token)
