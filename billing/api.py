"""HTTP and WebSocket surface for the billing core."""
from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from redis import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from .admission import REASON_UNAVAILABLE
from .config import BillingSettings
from .ledger import LedgerError
from .notifications import ConnectionRegistry
from .service import BillingService
from .sessions import ERROR_UNAVAILABLE, ERROR_VIDEO_NOT_FOUND

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".mpd"


class SessionStartPayload(BaseModel):
    video_id: str = Field(validation_alias=AliasChoices("video_id", "videoId"), min_length=1)


class HeartbeatPayload(BaseModel):
    video_id: str = Field(validation_alias=AliasChoices("video_id", "videoId"), min_length=1)
    playback_position: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("playback_position", "playbackPosition"),
        ge=0,
    )


class SegmentRequestPayload(BaseModel):
    video_id: str = Field(validation_alias=AliasChoices("video_id", "videoId"), min_length=1)
    segment_name: str = Field(validation_alias=AliasChoices("segment_name", "segmentName"), min_length=1)

    @field_validator("segment_name")
    @classmethod
    def validate_segment_name(cls, value: str) -> str:
        if ".." in value or "/" in value or "\\" in value:
            raise ValueError("Invalid segment name")
        return value


class CreditPayload(BaseModel):
    amount: Decimal = Field(gt=0)


class SocketMessage(BaseModel):
    type: str
    video_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("video_id", "videoId"))
    playback_position: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("playback_position", "playbackPosition"),
    )


def _settlement_body(result: Any) -> Optional[Dict[str, Any]]:
    return result.as_dict() if result is not None else None


def create_app(
    service: BillingService,
    settings: BillingSettings,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    app = FastAPI(title="Pay-per-view Billing", version="1.0.0")
    connections = registry or ConnectionRegistry()

    def _provided_token(request: Request) -> Optional[str]:
        return request.headers.get("X-Admin-Token")

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            return
        provided = _provided_token(request)
        if provided != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    async def require_user(request: Request) -> str:
        user_id = (request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User identity required")
        return user_id

    @app.exception_handler(RedisError)
    async def redis_error_handler(_: Request, exc: RedisError) -> JSONResponse:
        logger.warning("Fast ledger unavailable: %s", exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": REASON_UNAVAILABLE})

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(_: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.warning("Durable ledger unavailable: %s", exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": REASON_UNAVAILABLE})

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(_: Request, exc: LedgerError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    def session_error(error: Optional[str]) -> HTTPException:
        if error == ERROR_VIDEO_NOT_FOUND:
            return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
        if error == ERROR_UNAVAILABLE:
            return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=ERROR_UNAVAILABLE)
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error or "Session update failed")

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "active_sessions": len(await run_in_threadpool(service.active_sessions)),
            "connections": connections.connection_count(),
        }

    @app.get("/api/billing/status")
    async def billing_status(user_id: str = Depends(require_user)) -> Dict[str, Any]:
        billing = await run_in_threadpool(service.get_billing_status, user_id)
        if billing is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return billing.as_dict()

    @app.post("/api/billing/sessions/start")
    async def start_session(
        payload: SessionStartPayload,
        user_id: str = Depends(require_user),
    ) -> Dict[str, Any]:
        result = await run_in_threadpool(service.start_session, user_id, payload.video_id)
        if not result.success or result.session is None:
            raise session_error(result.error)
        return {"session": result.session.as_dict(), "ended": _settlement_body(result.ended)}

    @app.post("/api/billing/sessions/heartbeat")
    async def heartbeat(
        payload: HeartbeatPayload,
        user_id: str = Depends(require_user),
    ) -> Dict[str, Any]:
        result = await run_in_threadpool(
            service.update_heartbeat,
            user_id,
            payload.video_id,
            payload.playback_position,
        )
        if not result.success:
            raise session_error(result.error)
        return {
            "session_active": result.session_active,
            "settlement_due": result.settlement_due,
            "started": result.started,
            "switched": result.switched,
            "session": result.session.as_dict() if result.session else None,
            "ended": _settlement_body(result.ended),
        }

    @app.post("/api/billing/sessions/end")
    async def end_session(user_id: str = Depends(require_user)) -> Dict[str, Any]:
        result = await run_in_threadpool(service.end_session, user_id)
        return {"settlement": _settlement_body(result)}

    @app.post("/api/billing/segments")
    async def charge_segment(
        payload: SegmentRequestPayload,
        user_id: str = Depends(require_user),
    ) -> Any:
        manifest = payload.segment_name.endswith(MANIFEST_SUFFIX)
        billable = service.is_billable_segment(payload.segment_name)
        if not manifest and not billable:
            return {"billable": False, "admitted": True}

        # Charges always land in a session so some settlement trigger reaches them.
        started = await run_in_threadpool(service.ensure_session, user_id, payload.video_id)
        if not started.success:
            raise session_error(started.error)
        if not billable:
            session = started.session.as_dict() if started.session else None
            return {"billable": False, "admitted": True, "session": session}

        result = await run_in_threadpool(service.charge_for_request, user_id)
        if not result.admitted:
            return JSONResponse(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                content={"detail": result.reason, **result.as_dict()},
            )
        return {"billable": True, **result.as_dict()}

    @app.post("/api/billing/settle")
    async def force_settle(
        user_id: str = Query(..., min_length=1),
        _: Any = Depends(require_admin),
    ) -> Any:
        result = await run_in_threadpool(service.force_settle, user_id)
        if not result.success:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result.as_dict())
        return result.as_dict()

    @app.get("/api/billing/sessions")
    async def list_sessions(_: Any = Depends(require_admin)) -> Dict[str, List[Dict[str, Any]]]:
        def collect() -> List[Dict[str, Any]]:
            sessions: List[Dict[str, Any]] = []
            for user_id in service.active_sessions():
                session = service.sessions.get_session(user_id)
                if session is not None:
                    sessions.append(session.as_dict())
            return sessions

        return {"sessions": await run_in_threadpool(collect)}

    @app.post("/api/billing/users/{user_id}/credit")
    async def credit_user(
        user_id: str,
        payload: CreditPayload,
        _: Any = Depends(require_admin),
    ) -> Dict[str, Any]:
        balance = await run_in_threadpool(service.ledger.credit_user, user_id, payload.amount)
        return {"user_id": user_id, "balance": str(balance)}

    @app.websocket("/ws/billing")
    async def billing_socket(websocket: WebSocket, user_id: str = Query(default="")) -> None:
        user_id = user_id.strip()
        await websocket.accept()
        if not user_id:
            await websocket.send_json({"type": "error", "error": "Not authenticated"})
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        loop = asyncio.get_running_loop()

        def push(event: Dict[str, Any]) -> None:
            asyncio.run_coroutine_threadsafe(websocket.send_json(event), loop)

        token = connections.register(user_id, push)
        logger.info("Billing socket connected for %s", user_id)
        try:
            billing = await run_in_threadpool(service.get_billing_status, user_id)
            if billing is None:
                await websocket.send_json({"type": "error", "error": "User not found"})
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return
            await websocket.send_json({"type": "status_update", "data": billing.as_dict()})

            while True:
                raw = await websocket.receive_text()
                await websocket.send_json(await handle_message(user_id, raw))
        except WebSocketDisconnect:
            pass
        finally:
            if connections.unregister(user_id, token):
                await teardown(user_id)

    async def handle_message(user_id: str, raw: str) -> Dict[str, Any]:
        try:
            message = SocketMessage.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            return {"type": "error", "error": "Invalid message"}

        try:
            if message.type == "start_session":
                if not message.video_id:
                    return {"type": "error", "error": "videoId is required"}
                result = await run_in_threadpool(service.start_session, user_id, message.video_id)
                if not result.success or result.session is None:
                    return {"type": "error", "error": result.error or "Failed to start session"}
                return {"type": "session_started", "data": {"session": result.session.as_dict()}}

            if message.type == "end_session":
                ended = await run_in_threadpool(service.end_session, user_id)
                return {"type": "session_ended", "data": {"settlement": _settlement_body(ended)}}

            if message.type == "heartbeat":
                if not message.video_id:
                    return {"type": "error", "error": "videoId is required"}
                beat = await run_in_threadpool(
                    service.update_heartbeat,
                    user_id,
                    message.video_id,
                    message.playback_position,
                )
                if not beat.success:
                    return {"type": "error", "error": beat.error or "Heartbeat failed"}
                return {
                    "type": "heartbeat_ack",
                    "data": {
                        "session_active": beat.session_active,
                        "settlement_due": beat.settlement_due,
                        "session": beat.session.as_dict() if beat.session else None,
                    },
                }

            if message.type == "get_status":
                billing = await run_in_threadpool(service.get_billing_status, user_id)
                return {"type": "status_update", "data": billing.as_dict() if billing else None}

            if message.type == "ping":
                return {"type": "pong"}
        except (RedisError, SQLAlchemyError) as exc:
            logger.warning("Billing socket request %s failed for %s: %s", message.type, user_id, exc)
            return {"type": "error", "error": REASON_UNAVAILABLE}

        return {"type": "error", "error": f"Unknown message type: {message.type}"}

    async def teardown(user_id: str) -> None:
        # Submitted before the first await so a cancelled handler still ends the session.
        ending = asyncio.get_running_loop().run_in_executor(None, service.end_session, user_id)
        try:
            await asyncio.wait_for(asyncio.shield(ending), timeout=settings.teardown_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Ending session for %s exceeded %ss during disconnect; reaper will reclaim it",
                user_id,
                settings.teardown_timeout_seconds,
            )
        except (RedisError, SQLAlchemyError) as exc:
            logger.warning("Ending session for %s failed during disconnect: %s", user_id, exc)
        logger.info("Billing socket closed for %s", user_id)

    app.state.connections = connections
    app.state.billing = service
    return app


def run_api(app: FastAPI, settings: BillingSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["create_app", "run_api"]
