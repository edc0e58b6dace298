"""Chat router providing the relay WebSocket and read-only HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time business/visitor conversations
    - GET /chat/{business_id}/{visitor_id}/history: Paginated thread history
    - GET /businesses/{business_id}/conversations: Owner thread list

The WebSocket protocol supports:
    - Token authentication on connect (``token`` query param or Bearer header)
    - History snapshot on join, delivered to the joining connection only
    - Persisted message fan-out to the whole room, sender included
    - Visitor join/leave presence notifications
    - Explicit leave and ping/pong

Protocol Message Types (client -> server):
    - join: {businessId, visitorId?, visitorName?, name?}
    - message: {businessId, text, from?, visitorId?, clientToken?}
    - leave: {}
    - ping: {}
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.auth.identity import extract_bearer_token
from .errors import UnauthenticatedError, ValidationError
from .rooms import validate_identifier
from .schemas import Identity, IdentityKind
from .store import CONVERSATION_SORTS

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
POLICY_VIOLATION = 1008


def current_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Resolve the caller of an HTTP endpoint from its bearer token."""
    resolver = request.app.state.identity_resolver
    try:
        return resolver.resolve(extract_bearer_token(authorization))
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=401, detail=exc.message)


def _check_ids(*pairs) -> Optional[JSONResponse]:
    try:
        for value, field in pairs:
            validate_identifier(value, field)
    except ValidationError as exc:
        return JSONResponse({"error": exc.message}, status_code=400)
    return None


@router.get("/chat/{business_id}/{visitor_id}/history")
async def get_message_history(
    request: Request,
    business_id: str,
    visitor_id: str,
    before: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return (default chat.default_page_size)"),
    identity: Identity = Depends(current_identity),
) -> JSONResponse:
    """Get paginated message history for one conversation thread.

    Clients fetch older messages by passing the ``createdAt`` of the oldest
    message they currently have as ``before``.

    Only the visitor of the thread and the owner of the business may read it.
    ``limit`` defaults to ``chat.default_page_size`` and may not exceed
    ``chat.max_page_size``.

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /chat/b1/v1/history?limit=50
        GET /chat/b1/v1/history?before=1707321600.123&limit=50
    """
    invalid = _check_ids((business_id, "businessId"), (visitor_id, "visitorId"))
    if invalid is not None:
        return invalid

    chat_settings = request.app.state.config.chat
    if limit is None:
        limit = chat_settings.default_page_size
    if limit > chat_settings.max_page_size:
        return JSONResponse(
            {"error": f"limit must be between 1 and {chat_settings.max_page_size}"},
            status_code=400
        )

    directory = request.app.state.directory
    store = request.app.state.message_store

    if not await run_in_threadpool(directory.exists, business_id):
        return JSONResponse({"error": f"Business {business_id} not found"}, status_code=404)

    if identity.kind == IdentityKind.VISITOR:
        allowed = identity.id == visitor_id
    else:
        allowed = await run_in_threadpool(directory.is_owned_by, business_id, identity.id)
    if not allowed:
        logger.warning(
            "[history] %s %s denied access to %s:%s",
            identity.kind.value, identity.id, business_id, visitor_id,
        )
        return JSONResponse({"error": "Not a participant of this conversation"}, status_code=403)

    messages = await run_in_threadpool(store.get_page, business_id, visitor_id, before, limit)

    # Check if there are more messages before the oldest returned
    has_more = False
    if messages:
        oldest_ts = messages[0].createdAt
        older_messages = await run_in_threadpool(store.get_page, business_id, visitor_id, oldest_ts, 1)
        has_more = len(older_messages) > 0

    return JSONResponse({
        "messages": [msg.to_wire() for msg in messages],
        "hasMore": has_more
    })


@router.get("/businesses/{business_id}/conversations")
async def list_conversations(
    request: Request,
    business_id: str,
    sort: str = Query("new", description="new, old, atoz or ztoa"),
    search: str = Query("", description="Case-insensitive visitor name filter"),
    identity: Identity = Depends(current_identity),
) -> JSONResponse:
    """List a business's conversations grouped by visitor (owner only).

    Returns:
        JSON with businessId, businessName and conversations, each
        ``{visitorId, visitorName, messageCount, lastMessageAt, messages}``.
    """
    invalid = _check_ids((business_id, "businessId"))
    if invalid is not None:
        return invalid
    if sort not in CONVERSATION_SORTS:
        return JSONResponse(
            {"error": f"Invalid sort: {sort}. Use one of {', '.join(CONVERSATION_SORTS)}"},
            status_code=400
        )

    directory = request.app.state.directory
    if not await run_in_threadpool(directory.exists, business_id):
        return JSONResponse({"error": f"Business {business_id} not found"}, status_code=404)
    if identity.kind != IdentityKind.OWNER or not await run_in_threadpool(
        directory.is_owned_by, business_id, identity.id
    ):
        return JSONResponse({"error": "Only the business owner can list conversations"}, status_code=403)

    conversations = await run_in_threadpool(
        request.app.state.message_store.list_conversations, business_id, sort, search
    )
    return JSONResponse({
        "businessId": business_id,
        "businessName": await run_in_threadpool(directory.get_name, business_id),
        "conversations": [c.to_wire() for c in conversations],
    })


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token issued at login"),
) -> None:
    """WebSocket endpoint for real-time business/visitor chat.

    Protocol Flow:
        1. Client connects with credentials
           → Server sends: {type: "connected", connectionId, identity}
           → or {type: "error", code: "unauthenticated"} and closes (1008)
        2. Client sends: {type: "join", businessId, visitorId?}
           → Server sends to this client only: {type: "history", messages: [...]}
           → Other room members get {type: "presence", msg} for visitors
           → Owners without visitorId get {type: "pending"}
        3. Client sends: {type: "message", businessId, text, clientToken?}
           → Server broadcasts to the room: {type: "message", ...persistedMessage}
        4. Client sends: {type: "leave"} → {type: "left"}
        5. On disconnect → other members get {type: "presence", msg: "... left"}

    Any rejected event produces {type: "error", code, error} for this
    connection only.
    """
    relay = websocket.app.state.relay
    resolver = websocket.app.state.identity_resolver
    credentials = token or extract_bearer_token(websocket.headers.get("authorization"))

    await websocket.accept()
    try:
        identity = await run_in_threadpool(resolver.resolve, credentials)
    except UnauthenticatedError as exc:
        logger.warning("[WS] Rejected unauthenticated connection")
        await websocket.send_json(exc.to_event())
        await websocket.close(code=POLICY_VIOLATION)
        return

    session = await relay.connect(websocket, identity)
    connection_id = session.connection_id
    logger.info(f"[WS] Connection {connection_id} accepted for {identity.kind.value} {identity.id}")

    try:
        # Main message loop
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                await websocket.send_json(
                    ValidationError("Invalid message format: binary frames are not supported").to_event()
                )
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json(
                    ValidationError("Invalid message format: expected a JSON object").to_event()
                )
                continue
            await relay.handle(connection_id, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection_id} disconnected")
    finally:
        await relay.disconnect(connection_id)
