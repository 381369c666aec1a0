"""FastAPI application exposing the streaming engine."""

from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from threadcast import __version__
from threadcast.engine import engine
from threadcast.errors import (
    ConflictError,
    NotFoundError,
    RelayBusyError,
    ThreadcastError,
    ValidationError,
)
from threadcast.providers import ModelSpec
from threadcast.sse import create_sse_response, relay_event_stream
from threadcast_models import (
    ExchangeStarted,
    Message,
    ProviderStatus,
    SummaryJobStatus,
    Thread,
)

app = FastAPI(
    title="Threadcast API",
    description="Multi-model conversation engine with resumable token streams",
    version=__version__,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Connect the store and recover interrupted generations."""
    await engine.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop in-flight jobs and close connections."""
    await engine.stop()


def get_user_id_from_cf_header(cf_access_jwt_assertion: str | None = None) -> str:
    """Extract user ID from Cloudflare Access JWT header."""
    if not cf_access_jwt_assertion:
        return "local-dev-user"
    # TODO: Decode and verify CF Access JWT
    return "user-from-cf-jwt"


def http_error(error: ThreadcastError) -> HTTPException:
    """Map an engine error to an HTTP error."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RelayBusyError):
        return HTTPException(
            status_code=503,
            detail=str(error),
            headers={"Retry-After": str(max(int(error.retry_after), 1))},
        )
    return HTTPException(status_code=500, detail=str(error))


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Threadcast API", "version": __version__}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "active_generations": engine.orchestrator.active_jobs,
        "open_relays": engine.relay.open_count,
    }


# ============= Threads =============


class CreateThreadRequest(BaseModel):
    """Request to create a thread."""

    title: str | None = None


@app.post("/threads", response_model=Thread)
async def create_thread(
    request: CreateThreadRequest | None = None,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Create an empty thread."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    title = request.title if request else None
    return await engine.create_thread(user_id, title=title)


@app.get("/threads", response_model=list[Thread])
async def list_threads(
    limit: int = 50,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """List the caller's threads, most recently updated first."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    return await engine.list_threads(user_id, limit=limit)


@app.get("/threads/{thread_id}", response_model=Thread)
async def get_thread(
    thread_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Get a thread with its per-model state."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        return await engine.get_thread(user_id, thread_id)
    except ThreadcastError as e:
        raise http_error(e)


@app.get("/threads/{thread_id}/models/{model_id}/messages", response_model=list[Message])
async def list_messages(
    thread_id: str,
    model_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """List one model's messages in a thread, oldest first."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        return await engine.list_messages(user_id, thread_id, model_id)
    except ThreadcastError as e:
        raise http_error(e)


# ============= Exchanges =============


class ExchangeRequest(BaseModel):
    """Request to send a user message to a model."""

    model_id: str = Field(..., description="Model to answer")
    text: str = Field(..., description="User message text")
    temperature: float | None = Field(None, description="Sampling temperature, 0-2")


@app.post("/threads/{thread_id}/exchanges", response_model=ExchangeStarted)
async def start_exchange(
    thread_id: str,
    request: ExchangeRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Store the user message and start generating the reply.

    Returns once the reply placeholder exists. Follow the reply with
    GET /messages/{assistant_message_id}/stream.
    """
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        return await engine.start_exchange(
            user_id, thread_id, request.model_id, request.text, request.temperature
        )
    except ThreadcastError as e:
        raise http_error(e)


@app.get("/messages/{message_id}/stream")
async def stream_message(
    message_id: str,
    request: Request,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Stream a message's tokens as SSE, replaying any already produced."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        handle = await engine.open_relay(user_id, message_id)
    except ThreadcastError as e:
        raise http_error(e)
    return create_sse_response(relay_event_stream(handle, request))


class CancelResponse(BaseModel):
    """Cancel result."""

    cancelled: bool


@app.post("/messages/{message_id}/cancel", response_model=CancelResponse)
async def cancel_message(
    message_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Stop a generation. `cancelled` is false if it had already finished."""
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        cancelled = await engine.cancel_generation(user_id, message_id)
    except ThreadcastError as e:
        raise http_error(e)
    return CancelResponse(cancelled=cancelled)


# ============= Summaries =============


class SummaryResponse(BaseModel):
    """Summary after a manual regeneration."""

    summary: str | None
    status: SummaryJobStatus


@app.post("/threads/{thread_id}/models/{model_id}/summary", response_model=SummaryResponse)
async def regenerate_summary(
    thread_id: str,
    model_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Regenerate the rolling summary and wait for it.

    On failure the previous summary is returned with status `failed`.
    """
    if not user_id:
        user_id = get_user_id_from_cf_header()
    try:
        await engine.trigger_summary(user_id, thread_id, model_id)
        thread = await engine.get_thread(user_id, thread_id)
    except ThreadcastError as e:
        raise http_error(e)
    state = thread.models[model_id]
    return SummaryResponse(summary=state.summary, status=state.summary_job_status)


# ============= Models =============


@app.get("/models", response_model=list[ModelSpec])
async def list_models():
    """List the model catalog."""
    return engine.models()


@app.get("/models/{model_id}/status", response_model=ProviderStatus)
async def model_status(model_id: str):
    """Provider availability and, for local models, load state in this process."""
    try:
        return await engine.model_status(model_id)
    except ThreadcastError as e:
        raise http_error(e)


@app.post("/models/{model_id}/load", response_model=ProviderStatus)
async def load_model(model_id: str):
    """Start loading a local model. Returns the current status if already loading."""
    try:
        return await engine.load_model(model_id)
    except ThreadcastError as e:
        raise http_error(e)
