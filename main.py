from fastapi import FastAPI, Depends, HTTPException, Header, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.exceptions import HTTPException as StarletteHTTPException
from dtos.chat_request import ChatRequest
from graph import chat_graph
from utils import create_sse_stream
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import hmac
import os
from typing import List, Literal, Optional
from uuid import UUID
import logging

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Local imports
from database import get_db, engine, SessionLocal
from models import Base, User, Thread, ThreadItem
from schemas import (
    ThreadCreate, ThreadUpdate, ThreadFilters, ThreadResponse, ThreadStats,
    ThreadItemCreate, ThreadItemUpdate, ThreadItemResponse,
    UserResponse, SyncUserResponse, WebhookEvent,
    DomainInfo, DomainValidationRequest, DomainValidationResponse,
)
from services import ThreadService, ThreadItemService, AuthService
from services.domain import DOMAIN_CONFIGS, validate_question_for_domain
from services.events import WorkflowEvents
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)

    app.state.graph = chat_graph.compile()
    logger.info("Chat workflow compiled")

    yield


app = FastAPI(
    title="Domain Chat API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
origins = os.getenv("ALLOWED_ORIGINS", "*").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins if origins != ["*"] else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600
)


# Error responses are always {"error": "..."}
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


@app.get("/")
async def root():
    return {"message": "Hello World", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "domain-chat-api"}


@app.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_db)):
    """Comprehensive health check for all services."""
    health_status = {
        "status": "healthy",
        "service": "domain-chat-api",
        "checks": {}
    }

    # Check database connection
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy", "type": engine.dialect.name}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        health_status["checks"]["database"] = {"status": "unhealthy"}
        health_status["status"] = "unhealthy"

    # Check model and search provider configuration
    health_status["checks"]["openai"] = {
        "status": "configured" if os.getenv("OPENAI_API_KEY") else "not_configured"
    }
    health_status["checks"]["web_search"] = {
        "status": "configured" if os.getenv("TAVILY_API_KEY") else "not_configured"
    }

    return health_status


# Authentication
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """Get the caller from the identity provider token, creating the user row if needed."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    token_payload = AuthService.decode_token(credentials.credentials)
    if token_payload is None:
        raise credentials_exception

    user = AuthService.ensure_user_exists(db, token_payload)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )
    return user


def _parse_id(value: str, detail: str) -> UUID:
    """Ids that are not UUIDs cannot name a stored record."""
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _get_owned_thread(db: Session, thread_id: str, user_id: str, detail: str = "Thread not found or access denied") -> Thread:
    thread = ThreadService.get_thread(db=db, thread_id=_parse_id(thread_id, detail), user_id=user_id)
    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return thread


def _get_thread_item(db: Session, thread: Thread, item_id: str) -> ThreadItem:
    item = ThreadItemService.get_thread_item(
        db=db,
        thread_id=thread.id,
        item_id=_parse_id(item_id, "Thread item not found")
    )
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread item not found")
    return item


def _item_response(item: ThreadItem) -> ThreadItemResponse:
    return ThreadItemResponse(
        id=item.id,
        thread_id=item.thread_id,
        parent_id=item.parent_id,
        query=item.query,
        mode=item.mode,
        status=item.status,
        error=item.error,
        image_attachment=item.image_attachment,
        tool_calls=item.tool_calls,
        tool_results=item.tool_results,
        steps=item.steps,
        answer=item.answer,
        metadata=item.item_metadata,
        sources=item.sources,
        suggestions=item.suggestions or [],
        object=item.object,
        created_at=item.created_at,
        updated_at=item.updated_at
    )


def _thread_response(thread: Thread, items: Optional[List[ThreadItem]] = None) -> ThreadResponse:
    return ThreadResponse(
        id=thread.id,
        user_id=thread.user_id,
        title=thread.title,
        domain=thread.domain.value,
        pinned=thread.pinned,
        pinned_at=thread.pinned_at,
        certified_status=thread.certified_status.value,
        created_at=thread.created_at,
        updated_at=thread.updated_at,
        thread_items=[_item_response(item) for item in items or []]
    )


# Identity endpoints
@app.post("/auth/sync-user", response_model=SyncUserResponse)
async def sync_user(current_user: User = Depends(get_current_user)) -> SyncUserResponse:
    """Make sure the caller has a user row."""
    return SyncUserResponse(message="User synchronized successfully", user_id=current_user.id)


@app.get("/auth/sync-user", response_model=SyncUserResponse)
async def check_user_sync(current_user: User = Depends(get_current_user)) -> SyncUserResponse:
    """Check that the caller's user row exists, creating it if needed."""
    return SyncUserResponse(
        message="User exists and is synchronized",
        user_id=current_user.id,
        timestamp=datetime.now(timezone.utc)
    )


@app.get("/auth/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Get current user information."""
    return UserResponse.model_validate(current_user)


@app.post("/webhooks/identity")
async def identity_webhook(
    event: WebhookEvent,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db)
) -> dict:
    """Apply user lifecycle events (user.created, user.updated, user.deleted)."""
    if WEBHOOK_SECRET and not (x_webhook_secret and hmac.compare_digest(x_webhook_secret, WEBHOOK_SECRET)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    logger.info(f"Received identity webhook {event.type}")
    try:
        AuthService.handle_webhook_event(db, event)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e).splitlines()[0])

    return {"received": True, "type": event.type}


# Domain endpoints
@app.get("/domains", response_model=List[DomainInfo])
async def list_domains() -> List[DomainInfo]:
    """List the configured assistant domains."""
    return [
        DomainInfo(
            domain=key,
            name=config.name,
            description=config.description,
            restrictive=config.restrictive,
            keywords=config.keywords
        )
        for key, config in DOMAIN_CONFIGS.items()
    ]


@app.post("/domains/validate", response_model=DomainValidationResponse)
async def validate_domain_question(req: DomainValidationRequest) -> DomainValidationResponse:
    """Check whether a question plausibly belongs to a domain."""
    result = validate_question_for_domain(req.question, req.domain)
    return DomainValidationResponse(**result.model_dump())


# Chat workflow
def _save_answer(thread_item_id: UUID, result: dict) -> None:
    """Persist the final answer of a workflow run on its thread item."""
    db = SessionLocal()
    try:
        item = db.query(ThreadItem).filter(ThreadItem.id == thread_item_id).first()
        if item is None:
            logger.warning(f"Thread item {thread_item_id} vanished before its answer was saved")
            return
        ThreadItemService.update_thread_item(db, item, ThreadItemUpdate(
            answer={"text": result["answer"], "status": "COMPLETED"},
            status="COMPLETED"
        ))
    finally:
        db.close()


def _save_run_outputs(thread_item_id: UUID, final_state: dict, events: WorkflowEvents) -> None:
    """Persist what the run produced besides the answer: steps, sources, suggestions, final status."""
    changes = {
        "steps": events.get("steps"),
        "sources": final_state.get("sources"),
        "suggestions": final_state.get("suggested_questions"),
        "status": events.get("status"),
        "error": final_state.get("error"),
    }
    update = ThreadItemUpdate(**{key: value for key, value in changes.items() if value is not None})

    db = SessionLocal()
    try:
        item = db.query(ThreadItem).filter(ThreadItem.id == thread_item_id).first()
        if item is not None:
            ThreadItemService.update_thread_item(db, item, update)
    finally:
        db.close()


@app.post("/stream")
async def stream(
    req: ChatRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Run the chat workflow for a question and stream its events."""
    thread = _get_owned_thread(db, req.thread_id, current_user.id)

    if req.thread_item_id:
        item = _get_thread_item(db, thread, req.thread_item_id)
    else:
        item = ThreadItemService.create_thread_item(db, thread.id, ThreadItemCreate(
            query=req.message,
            mode=req.mode,
            parent_id=req.parent_id,
            status="PENDING"
        ))

    history = ThreadItemService.conversation_history(db, thread.id, before_item=item)

    input_data = {
        "messages": [*history, {"role": "user", "content": req.message}],
        "mode": req.mode,
        "web_search": req.web_search,
        "show_suggestions": req.show_suggestions,
        "domain": req.domain or thread.domain.value,
        "custom_instructions": req.custom_instructions,
        "gl": req.gl,
        "thread_id": str(thread.id),
        "thread_item_id": str(item.id),
    }

    item_id = item.id
    events = WorkflowEvents()
    events.update("thread_item", {"thread_id": str(thread.id), "thread_item_id": str(item_id)})
    graph = getattr(app.state, "graph", None)
    if graph is None:
        graph = app.state.graph = chat_graph.compile()

    return StreamingResponse(
        create_sse_stream(
            graph,
            input_data,
            events,
            asyncio.Event(),
            on_finish=lambda result: _save_answer(item_id, result),
            on_complete=lambda final_state: _save_run_outputs(item_id, final_state, events),
        ),
        media_type="text/event-stream"
    )


# Thread management endpoints
@app.get("/threads", response_model=List[ThreadResponse])
async def list_threads(
    pinned: Optional[bool] = Query(None),
    domain: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    order_by: Literal["created_at", "updated_at", "pinned_at"] = Query("created_at"),
    order_direction: Literal["asc", "desc"] = Query("desc"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[ThreadResponse]:
    """List the caller's threads, each with its first item as a preview."""
    filters = ThreadFilters(
        pinned=pinned,
        domain=domain,
        limit=limit,
        offset=offset,
        order_by=order_by,
        order_direction=order_direction
    )

    threads = ThreadService.get_user_threads(db=db, user_id=current_user.id, filters=filters)

    return [_thread_response(thread, thread.thread_items[:1]) for thread in threads]


@app.post("/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(
    thread: ThreadCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Create a new conversation thread."""
    db_thread = ThreadService.create_thread(db=db, user_id=current_user.id, thread_data=thread)
    return _thread_response(db_thread)


@app.get("/threads/search", response_model=List[ThreadResponse])
async def search_threads(
    q: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[ThreadResponse]:
    """Search the caller's threads by title or question text."""
    if not q:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query parameter is required")

    threads = ThreadService.search_threads(db=db, user_id=current_user.id, query=q, limit=limit)
    return [_thread_response(thread, thread.thread_items[:1]) for thread in threads]


@app.get("/threads/stats", response_model=ThreadStats)
async def thread_stats(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadStats:
    """Thread counters for the caller."""
    return ThreadService.get_thread_stats(db=db, user_id=current_user.id)


@app.delete("/threads/clear")
async def clear_threads(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Delete all of the caller's threads."""
    deleted = ThreadService.clear_all_threads(db=db, user_id=current_user.id)
    return {"message": "All threads cleared successfully", "deleted": deleted}


@app.get("/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Get a specific thread with all of its items."""
    thread = _get_owned_thread(db, thread_id, current_user.id, detail="Thread not found")
    return _thread_response(thread, thread.thread_items)


@app.put("/threads/{thread_id}", response_model=ThreadResponse)
@app.patch("/threads/{thread_id}", response_model=ThreadResponse)
async def update_thread(
    thread_id: str,
    thread_update: ThreadUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Update a thread's title, pin state or certification status."""
    updated_thread = ThreadService.update_thread(
        db=db,
        thread_id=_parse_id(thread_id, "Thread not found or access denied"),
        user_id=current_user.id,
        thread_update=thread_update
    )

    if not updated_thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found or access denied")

    return _thread_response(updated_thread)


@app.delete("/threads/{thread_id}")
async def delete_thread(
    thread_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Delete a thread and its items."""
    deleted = ThreadService.delete_thread(
        db=db,
        thread_id=_parse_id(thread_id, "Thread not found or access denied"),
        user_id=current_user.id
    )

    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found or access denied")

    return {"message": "Thread deleted successfully"}


@app.post("/threads/{thread_id}/pin", response_model=ThreadResponse)
async def toggle_thread_pin(
    thread_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Pin an unpinned thread or unpin a pinned one."""
    thread = ThreadService.toggle_thread_pin(
        db=db,
        thread_id=_parse_id(thread_id, "Thread not found or access denied"),
        user_id=current_user.id
    )

    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found or access denied")

    return _thread_response(thread)


# Thread item endpoints
@app.get("/threads/{thread_id}/items", response_model=List[ThreadItemResponse])
async def list_thread_items(
    thread_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[ThreadItemResponse]:
    """List a thread's items in creation order."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    return [_item_response(item) for item in ThreadItemService.get_thread_items(db, thread.id)]


@app.post("/threads/{thread_id}/items", response_model=ThreadItemResponse, status_code=status.HTTP_201_CREATED)
async def create_thread_item(
    thread_id: str,
    item: ThreadItemCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadItemResponse:
    """Add an item to a thread."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    db_item = ThreadItemService.create_thread_item(db, thread.id, item)
    return _item_response(db_item)


@app.get("/threads/{thread_id}/items/{item_id}", response_model=ThreadItemResponse)
async def get_thread_item(
    thread_id: str,
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadItemResponse:
    """Get a single thread item."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    return _item_response(_get_thread_item(db, thread, item_id))


@app.put("/threads/{thread_id}/items/{item_id}", response_model=ThreadItemResponse)
@app.patch("/threads/{thread_id}/items/{item_id}", response_model=ThreadItemResponse)
async def update_thread_item(
    thread_id: str,
    item_id: str,
    item_update: ThreadItemUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadItemResponse:
    """Apply a partial update to a thread item."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    item = _get_thread_item(db, thread, item_id)
    return _item_response(ThreadItemService.update_thread_item(db, item, item_update))


@app.delete("/threads/{thread_id}/items/{item_id}")
async def delete_thread_item(
    thread_id: str,
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Delete a thread item."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    ThreadItemService.delete_thread_item(db, _get_thread_item(db, thread, item_id))
    return {"message": "Thread item deleted successfully"}


@app.delete("/threads/{thread_id}/items/{item_id}/followups")
async def delete_followup_thread_items(
    thread_id: str,
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Delete every item asked after the given one, e.g. before re-asking it."""
    thread = _get_owned_thread(db, thread_id, current_user.id)
    deleted = ThreadItemService.delete_followup_thread_items(db, _get_thread_item(db, thread, item_id))
    return {"message": "Follow-up thread items deleted successfully", "deleted": deleted}
