import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database

from auth import AuthService
from config import ADMIN_EMAIL, ADMIN_PASSWORD, CORS_ORIGINS, LOG_LEVEL, PORT, SESSION_IDLE_TIMEOUT
from database import database_status, db
from errors import AllocationError, AuthError, NotFoundError, StoreError, TicketDeskError, ValidationError
from feed import ChangeFeed
from schemas import AdminMessagePost, ChatMessageCreate, LoginRequest, TicketSubmission, TicketUpdate
from session_cache import Session
from store import TicketStore

logger = logging.getLogger(__name__)


def _http_error(e: TicketDeskError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, AuthError):
        return HTTPException(status_code=401, detail=e.message)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, AllocationError):
        return HTTPException(status_code=409, detail=e.message)
    return HTTPException(status_code=500, detail=e.message)


class SessionRegistry:
    """Live sessions by id. Each browser tab or dashboard holds one.

    A session not seen for `idle_timeout` seconds is closed on the next
    registry access, releasing its feed subscriptions.
    """

    def __init__(self, idle_timeout: float = SESSION_IDLE_TIMEOUT, clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> str:
        self.reap_expired()
        session_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[session_id] = session
            self._last_seen[session_id] = self.clock()
        return session_id

    def get(self, session_id: str) -> Session:
        self.reap_expired()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._last_seen[session_id] = self.clock()
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            self._last_seen.pop(session_id, None)
            return self._sessions.pop(session_id, None)

    def reap_expired(self) -> int:
        cutoff = self.clock() - self.idle_timeout
        with self._lock:
            expired = [sid for sid, seen in self._last_seen.items() if seen < cutoff]
            closing = [(sid, self._sessions.pop(sid)) for sid in expired]
            for sid in expired:
                del self._last_seen[sid]
        for sid, session in closing:
            session.close()
            logger.info("Session %s expired after %ss idle", sid, self.idle_timeout)
        return len(closing)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._last_seen.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        return len(self._sessions)


def create_app(database: Optional[Database], session_idle_timeout: float = SESSION_IDLE_TIMEOUT,
               admin_email: Optional[str] = ADMIN_EMAIL, admin_password: Optional[str] = ADMIN_PASSWORD) -> FastAPI:
    feed = ChangeFeed()
    sessions = SessionRegistry(session_idle_timeout)
    store: Optional[TicketStore] = None
    auth: Optional[AuthService] = None
    if database is not None:
        try:
            store = TicketStore(database, feed)
            auth = AuthService(database)
        except StoreError as e:
            logger.error("Store unavailable: %s", e.message)
    if auth is not None and admin_email and admin_password:
        try:
            auth.ensure_admin(admin_email, admin_password)
        except TicketDeskError as e:
            logger.error("Could not provision admin %s: %s", admin_email, e.message)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        sessions.close_all()

    app = FastAPI(title="Repair Desk API", lifespan=lifespan)
    app.state.db = database
    app.state.feed = feed
    app.state.sessions = sessions
    app.state.store = store
    app.state.auth = auth

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def read_root():
        return {"message": "Repair Desk API is running"}

    @app.get("/test")
    def test_database():
        return {"backend": "running", **database_status(database), "sessions": len(sessions)}

    # ---------- sessions ----------

    @app.post("/api/sessions", response_model=dict)
    def open_session():
        if store is None or auth is None:
            raise HTTPException(status_code=503, detail="Database not available")
        session = Session(store, feed, auth)
        try:
            session.open()
        except TicketDeskError as e:
            session.close()
            raise _http_error(e)
        session_id = sessions.add(session)
        logger.info("Session %s opened", session_id)
        return {"session_id": session_id, "admin_message": session.admin_message}

    @app.delete("/api/sessions/{session_id}", response_model=dict)
    def close_session(session_id: str):
        session = sessions.remove(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session.close()
        logger.info("Session %s closed", session_id)
        return {"closed": True}

    @app.get("/api/sessions/{session_id}/status", response_model=dict)
    def session_status(session_id: str):
        session = sessions.get(session_id)
        conversation = session.conversation
        return {
            "signed_in": session.is_admin,
            "tickets": len(session.tickets),
            "error": session.last_error,
            "chat_error": conversation.last_error if conversation else None,
        }

    @app.get("/api/sessions/{session_id}/challenge/{view}", response_model=dict)
    def get_challenge(session_id: str, view: str):
        session = sessions.get(session_id)
        try:
            return {"view": view, "code": session.enter_view(view)}
        except TicketDeskError as e:
            raise _http_error(e)

    # ---------- tickets ----------

    @app.post("/api/sessions/{session_id}/tickets", response_model=dict)
    def submit_ticket(session_id: str, payload: TicketSubmission):
        session = sessions.get(session_id)
        try:
            ticket = session.submit_ticket(payload)
            return {"id": ticket.id, "ticket_number": ticket.ticket_number}
        except TicketDeskError as e:
            raise _http_error(e)

    @app.get("/api/sessions/{session_id}/tickets", response_model=List[dict])
    def list_tickets(session_id: str, status: Optional[str] = None, repair_type: Optional[str] = None,
                     triage: bool = False):
        session = sessions.get(session_id)
        try:
            session.require_admin()
        except TicketDeskError as e:
            raise _http_error(e)
        tickets = session.triage_order() if triage else list(session.tickets)
        if status:
            tickets = [t for t in tickets if t.status == status]
        if repair_type:
            tickets = [t for t in tickets if t.repair_type == repair_type]
        return [t.model_dump(mode="json") for t in tickets]

    @app.get("/api/sessions/{session_id}/tickets/track/{ticket_number}", response_model=dict)
    def track_ticket(session_id: str, ticket_number: str):
        session = sessions.get(session_id)
        try:
            return session.track(ticket_number).model_dump(mode="json")
        except TicketDeskError as e:
            raise _http_error(e)

    @app.patch("/api/sessions/{session_id}/tickets/{ticket_id}", response_model=dict)
    def update_ticket(session_id: str, ticket_id: str, updates: TicketUpdate):
        session = sessions.get(session_id)
        try:
            return session.update_ticket(ticket_id, updates).model_dump(mode="json")
        except TicketDeskError as e:
            raise _http_error(e)

    @app.delete("/api/sessions/{session_id}/tickets/{ticket_id}", response_model=dict)
    def delete_ticket(session_id: str, ticket_id: str):
        session = sessions.get(session_id)
        try:
            session.delete_ticket(ticket_id)
            return {"id": ticket_id, "deleted": True}
        except TicketDeskError as e:
            raise _http_error(e)

    @app.get("/api/sessions/{session_id}/stats", response_model=dict)
    def ticket_stats(session_id: str):
        session = sessions.get(session_id)
        try:
            session.require_admin()
        except TicketDeskError as e:
            raise _http_error(e)
        return {
            "total": len(session.tickets),
            "by_repair_type": session.counts_by_repair_type(),
            "by_status": session.counts_by_status(),
        }

    # ---------- admin message ----------

    @app.get("/api/sessions/{session_id}/admin-message", response_model=dict)
    def get_admin_message(session_id: str):
        session = sessions.get(session_id)
        return {"message": session.admin_message, "error": session.last_error}

    @app.put("/api/sessions/{session_id}/admin-message", response_model=dict)
    def post_admin_message(session_id: str, payload: AdminMessagePost):
        session = sessions.get(session_id)
        try:
            return {"message": session.post_admin_message(payload.message)}
        except TicketDeskError as e:
            raise _http_error(e)

    # ---------- auth ----------

    @app.post("/api/sessions/{session_id}/login", response_model=dict)
    def login(session_id: str, payload: LoginRequest):
        session = sessions.get(session_id)
        try:
            user = session.sign_in(payload.email, payload.password, payload.verification_code)
            return {"id": user.id, "email": user.email}
        except TicketDeskError as e:
            raise _http_error(e)

    @app.post("/api/sessions/{session_id}/logout", response_model=dict)
    def logout(session_id: str):
        session = sessions.get(session_id)
        session.sign_out()
        return {"signed_in": False}

    # ---------- chat ----------

    @app.post("/api/sessions/{session_id}/chat/messages", response_model=List[dict])
    def send_chat(session_id: str, payload: ChatMessageCreate):
        session = sessions.get(session_id)
        try:
            return [m.model_dump(mode="json") for m in session.send_chat(payload.message)]
        except TicketDeskError as e:
            raise _http_error(e)

    @app.post("/api/sessions/{session_id}/chat/{ticket_number}", response_model=List[dict])
    def open_chat(session_id: str, ticket_number: str):
        session = sessions.get(session_id)
        try:
            return [m.model_dump(mode="json") for m in session.open_chat(ticket_number)]
        except TicketDeskError as e:
            raise _http_error(e)

    @app.get("/api/sessions/{session_id}/chat", response_model=List[dict])
    def get_chat(session_id: str):
        session = sessions.get(session_id)
        if session.conversation is None:
            raise HTTPException(status_code=404, detail="No conversation open")
        return [m.model_dump(mode="json") for m in session.conversation.messages]

    @app.delete("/api/sessions/{session_id}/chat", response_model=dict)
    def close_chat(session_id: str):
        session = sessions.get(session_id)
        session.close_chat()
        return {"closed": True}

    return app


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app(db)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
