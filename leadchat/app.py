"""FastAPI application: HTTP + WebSocket endpoints for the Roy lead chat.

Endpoints:

  GET    /health                                   Health check

  Chat widget:
  POST   /api/chat/sessions                        Open a chat (welcome message)
  GET    /api/chat/sessions/{id}                   Session snapshot
  DELETE /api/chat/sessions/{id}                   Close and discard a chat
  POST   /api/chat/sessions/{id}/messages          Send a visitor message
  POST   /api/chat/sessions/{id}/call              Ask Roy to phone the visitor
  POST   /api/chat/sessions/{id}/lead-form         Confirm/correct lead details
  GET    /api/chat/sessions/{id}/transcript        Download the conversation
  GET    /api/chat/sessions/{id}/listings.csv      Download suggested listings

  Admin (bearer token):
  GET    /api/chat/sessions                        Active sessions
  GET    /api/leads                                List/filter leads
  GET    /api/leads/stats                          Overview counts
  GET    /api/leads/export.csv                     Leads CSV
  DELETE /api/leads/{lead_id}                      Delete a lead
  WS     /api/chat/sessions/{id}/debug             Live debug events (?token=)
"""

from __future__ import annotations

# Load .env into os.environ early so SDK clients that read their keys
# from the environment see them.
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from typing import Callable, Literal, Optional

# Configure root logger early so all leadchat.* loggers have a handler
# and are visible when run via `uvicorn leadchat.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from leadchat.auth import require_admin_token, require_admin_ws
from leadchat.config import settings
from leadchat.debug_events import ChatEventType, get_trace
from leadchat.errors import (
    LeadChatError,
    LeadNotFoundError,
    LeadStoreError,
    LeadValidationError,
    MalformedMessageError,
    SessionNotFoundError,
    SessionStateError,
)
from leadchat.export import (
    export_filename,
    lead_stats,
    leads_to_csv,
    listings_to_csv,
)
from leadchat.models.lead import LeadFormSubmission, LeadStatus
from leadchat.session import (
    ConversationSession,
    evict_idle_sessions,
    get_active_sessions,
    get_session,
    register_session,
    unregister_session,
)
from leadchat.store.base import LeadFilter, LeadStore

log = logging.getLogger("leadchat.app")

_START_TIME = time.time()

_ERROR_STATUS: tuple[tuple[type[LeadChatError], int], ...] = (
    (MalformedMessageError, 400),
    (LeadNotFoundError, 404),
    (SessionNotFoundError, 404),
    (SessionStateError, 409),
    (LeadValidationError, 422),
    (LeadStoreError, 502),
)


class ChatMessageIn(BaseModel):
    text: str


class CallRequestIn(BaseModel):
    phone_number: str = ""


SessionFactory = Callable[[LeadStore], ConversationSession]


def create_app(
    lead_store: Optional[LeadStore] = None,
    session_factory: Optional[SessionFactory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lead_store: Store shared by every session and the admin API.
            Built from settings when omitted.
        session_factory: Builds a ConversationSession around the store.
            Defaults to ``_create_session``.
    """
    app = FastAPI(
        title="Roy Lead Chat",
        description="Real-estate lead-generation chat with Roy",
        version="0.1.0",
    )
    app.state.lead_store = lead_store if lead_store is not None else _create_lead_store()
    app.state.session_factory = session_factory or _create_session

    def _session_or_404(session_id: str) -> ConversationSession:
        session = get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(LeadChatError)
    async def lead_chat_error(request: Request, exc: LeadChatError) -> JSONResponse:
        status_code = 500
        for exc_type, code in _ERROR_STATUS:
            if isinstance(exc, exc_type):
                status_code = code
                break
        body: dict = {"error": str(exc)}
        if isinstance(exc, LeadValidationError):
            body["missing"] = exc.missing
        if status_code >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(body, status_code=status_code)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check: confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "sessions": len(get_active_sessions()),
        })

    # ── Chat sessions ──────────────────────────────────────────

    @app.post("/api/chat/sessions", status_code=201)
    async def open_session() -> JSONResponse:
        _sweep_sessions()
        session = app.state.session_factory(app.state.lead_store)
        sid = register_session(session)
        session.attach_trace(get_trace(sid))
        welcome = session.open()
        return JSONResponse(
            {**session.to_dict(), "welcome": welcome.model_dump(mode="json")},
            status_code=201,
        )

    @app.get("/api/chat/sessions", dependencies=[Depends(require_admin_token)])
    async def list_sessions() -> JSONResponse:
        """Return summary of all active chat sessions."""
        _sweep_sessions()
        sessions = get_active_sessions()
        return JSONResponse({
            "sessions": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
        })

    @app.get("/api/chat/sessions/{session_id}")
    async def get_chat_session(session_id: str) -> JSONResponse:
        return JSONResponse(_session_or_404(session_id).to_dict(detail=True))

    @app.delete("/api/chat/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str) -> Response:
        _session_or_404(session_id)
        unregister_session(session_id)
        return Response(status_code=204)

    @app.post("/api/chat/sessions/{session_id}/messages")
    async def send_message(session_id: str, body: ChatMessageIn) -> JSONResponse:
        session = _session_or_404(session_id)
        result = await session.send_message(body.text)
        status_code = 200 if result.accepted else 409
        return JSONResponse(result.model_dump(mode="json"), status_code=status_code)

    @app.post("/api/chat/sessions/{session_id}/call")
    async def request_call(session_id: str, body: CallRequestIn) -> JSONResponse:
        session = _session_or_404(session_id)
        reply = await session.request_call(body.phone_number)
        return JSONResponse({
            "message": reply.model_dump(mode="json"),
            "completed": session.completed,
        })

    @app.post("/api/chat/sessions/{session_id}/lead-form")
    async def submit_lead_form(session_id: str, form: LeadFormSubmission) -> JSONResponse:
        session = _session_or_404(session_id)
        record = await session.submit_lead_form(form)
        return JSONResponse({
            "lead_id": session.lead_id,
            "lead": record.model_dump(mode="json"),
            "score": session.score,
        })

    @app.get("/api/chat/sessions/{session_id}/transcript")
    async def download_transcript(session_id: str) -> PlainTextResponse:
        session = _session_or_404(session_id)
        filename = export_filename("conversation-with-roy", "txt")
        return PlainTextResponse(
            session.transcript_text(),
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/chat/sessions/{session_id}/listings.csv")
    async def download_listings(session_id: str) -> Response:
        session = _session_or_404(session_id)
        filename = export_filename("vancouver-listings", "csv")
        return Response(
            listings_to_csv(session.suggested_listings()),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ── Admin: leads ───────────────────────────────────────────

    def _lead_filter(
        status: Optional[LeadStatus] = Query(default=None),
        tier: Optional[Literal["high", "medium", "low"]] = Query(default=None),
        search: str = Query(default=""),
    ) -> LeadFilter:
        return LeadFilter(status=status, tier=tier, search=search.strip())

    @app.get("/api/leads", dependencies=[Depends(require_admin_token)])
    async def list_leads(lead_filter: LeadFilter = Depends(_lead_filter)) -> JSONResponse:
        leads = await app.state.lead_store.list(lead_filter)
        return JSONResponse({
            "leads": [lead.model_dump(mode="json") for lead in leads],
            "count": len(leads),
        })

    @app.get("/api/leads/stats", dependencies=[Depends(require_admin_token)])
    async def leads_stats() -> JSONResponse:
        return JSONResponse(lead_stats(await app.state.lead_store.list()))

    @app.get("/api/leads/export.csv", dependencies=[Depends(require_admin_token)])
    async def export_leads(lead_filter: LeadFilter = Depends(_lead_filter)) -> Response:
        leads = await app.state.lead_store.list(lead_filter)
        filename = export_filename("leads", "csv")
        return Response(
            leads_to_csv(leads),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.delete(
        "/api/leads/{lead_id}",
        status_code=204,
        dependencies=[Depends(require_admin_token)],
    )
    async def delete_lead(lead_id: str) -> Response:
        await app.state.lead_store.delete(lead_id)
        log.info("Lead %s deleted by admin", lead_id)
        return Response(status_code=204)

    # ── Debug stream WebSocket ──────────────────────────────────

    @app.websocket("/api/chat/sessions/{session_id}/debug")
    async def debug_stream(
        websocket: WebSocket,
        session_id: str,
        _auth: None = Depends(require_admin_ws),
    ) -> None:
        """WebSocket endpoint that streams real-time debug events."""
        session = get_session(session_id)
        if not session:
            await websocket.close(code=4004, reason="Session not found")
            return

        await websocket.accept()
        trace = get_trace(session_id)
        session.attach_trace(trace)
        queue = trace.subscribe()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
                if event["type"] == ChatEventType.CLOSED.value:
                    await websocket.close(code=1000, reason="Session closed")
                    break
        except WebSocketDisconnect:
            pass
        finally:
            trace.unsubscribe(queue)

    return app


# ── Helper functions ──────────────────────────────────────────────

def _sweep_sessions() -> list[str]:
    """Evict chat sessions whose visitor has gone quiet."""
    return evict_idle_sessions(
        idle_timeout=settings.session_idle_timeout,
        finished_idle_timeout=settings.finished_session_idle_timeout,
        max_sessions=settings.max_active_sessions,
    )


def _create_lead_store() -> LeadStore:
    """Build the configured LeadStore backend."""
    if settings.lead_store_backend == "supabase":
        from leadchat.store.supabase import SupabaseLeadStore
        return SupabaseLeadStore(
            url=settings.supabase_url,
            key=settings.supabase_key,
            table=settings.supabase_table,
        )
    from leadchat.store.memory import MemoryLeadStore
    return MemoryLeadStore()


def _create_session(lead_store: LeadStore) -> ConversationSession:
    """Create a ConversationSession with configured collaborators."""
    from leadchat.reply import ClaudeReplyGenerator
    from listings.catalog import load_catalog

    catalog = load_catalog(settings.listings_path)

    call_trigger = None
    try:
        from leadchat.call_providers.elevenlabs import ElevenLabsCallTrigger
        call_trigger = ElevenLabsCallTrigger(
            api_key=settings.elevenlabs_api_key,
            agent_id=settings.elevenlabs_agent_id,
            url=settings.elevenlabs_url,
        )
    except ValueError as e:
        log.warning("ElevenLabs not configured: %s", e)

    reply_generator = ClaudeReplyGenerator(
        api_key=settings.anthropic_api_key,
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        catalog=catalog,
        max_messages=settings.max_messages,
        call_prompt_threshold=settings.call_prompt_threshold,
    )

    return ConversationSession(
        reply_generator=reply_generator,
        lead_store=lead_store,
        call_trigger=call_trigger,
        catalog=catalog,
    )


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    for warning in settings.validate_startup():
        log.warning(warning)

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "leadchat.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
