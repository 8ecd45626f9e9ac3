from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from media_pipeline import __version__
from media_pipeline.config import resolve_config
from media_pipeline.container import Container, build_container
from media_pipeline.errors import (
    CorrelationConflictError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    PreconditionError,
    StaleStateError,
)
from media_pipeline.logging_setup import setup_logging
from media_pipeline.state import MediaKind, SubmissionStatus
from media_pipeline.webhooks import verify_signature

logger = logging.getLogger(__name__)

# Providers send OPTIONS to webhook URLs before registering them
WEBHOOK_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, signature",
}

TERMINAL_SUBMISSION_STATUSES = {
    SubmissionStatus.COMPLETED,
    SubmissionStatus.FAILED,
    SubmissionStatus.PARTIAL_FAILURE,
}


# --- Request models ---


class ArticleCreate(BaseModel):
    organizationId: str = Field(..., min_length=1)  # noqa: N815
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class SubmissionCreate(BaseModel):
    articleId: Optional[str] = None  # noqa: N815
    article: Optional[ArticleCreate] = None
    language: str = "ENGLISH"
    outputs: List[MediaKind] = Field(..., min_length=1)
    mode: Literal["script", "full"] = "script"
    customization: Dict[MediaKind, Dict[str, Any]] = Field(default_factory=dict)


class ScriptUpdate(BaseModel):
    script: str = Field(..., min_length=1)


class MediaRequest(BaseModel):
    customization: Dict[str, Any] = Field(default_factory=dict)


class RegenerateRequest(BaseModel):
    script: Optional[str] = None
    customization: Dict[str, Any] = Field(default_factory=dict)


# --- Error mapping ---


def _http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": e.message})
    if isinstance(e, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "INVALID_TRANSITION",
                "message": e.message,
                "status": e.current,
                "event": e.event,
            },
        )
    if isinstance(e, (StaleStateError, CorrelationConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": "CONFLICT", "message": e.message})
    if isinstance(e, PreconditionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail={"code": "PRECONDITION_FAILED", "message": e.message}
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"code": "PROVIDER_ERROR", "message": e.message})


async def _call(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run blocking store/queue work off the event loop, mapping pipeline errors to HTTP."""
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except PipelineError as e:
        raise _http_error(e) from e


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the API. Without a container one is built from config at start-up."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            config = resolve_config()
            setup_logging(config.logging.level)
            app.state.container = build_container(config)
        await asyncio.to_thread(app.state.container.store.create_schema)
        yield

    app = FastAPI(title="Media Pipeline API", version=__version__, lifespan=lifespan)
    app.state.container = container

    if container is not None:
        cors_origins = container.config.api.cors_origins
        storage_root = Path(container.config.storage.root)
    else:
        config = resolve_config()
        cors_origins = config.api.cors_origins
        storage_root = Path(config.storage.root)

    storage_root.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=str(storage_root)), name="media")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_container(request: Request) -> Container:
        return request.app.state.container

    # --- API ENDPOINTS ---

    @app.get("/")
    async def root():
        return {"message": "Media Pipeline API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": __version__}

    # --- ARTICLES / SUBMISSIONS ---

    @app.post("/articles", status_code=201)
    async def create_article(data: ArticleCreate, request: Request):
        c = get_container(request)
        return await _call(c.store.create_article, data.organizationId, data.title, data.content)

    @app.post("/submissions", status_code=201)
    async def create_submission(data: SubmissionCreate, request: Request):
        """Create a Submission and enqueue the first job of each requested output."""
        c = get_container(request)
        if bool(data.articleId) == bool(data.article):
            raise HTTPException(
                status_code=400,
                detail={"code": "BAD_REQUEST", "message": "Provide exactly one of articleId or article"},
            )

        def create() -> dict:
            article_id = data.articleId
            if data.article is not None:
                article_id = c.store.create_article(
                    data.article.organizationId, data.article.title, data.article.content
                )["id"]
            return c.submissions.create(
                article_id, data.outputs, language=data.language, mode=data.mode,
                customization=data.customization,
            )

        return await _call(create)

    @app.get("/submissions/{submission_id}")
    async def get_submission(submission_id: str, request: Request):
        return await _call(get_container(request).submissions.get, submission_id)

    async def submission_events(c: Container, submission_id: str, request: Request) -> AsyncGenerator[str, None]:
        """SSE generator yielding the derived status whenever it changes."""
        last = None
        while True:
            if await request.is_disconnected():
                break
            try:
                submission = await asyncio.to_thread(c.store.get_submission, submission_id)
            except NotFoundError:
                yield 'data: {"error": "not_found"}\n\n'
                break
            current = SubmissionStatus(submission["status"])
            if current != last:
                yield f"data: {json.dumps({'status': current.value})}\n\n"
                last = current
            if current in TERMINAL_SUBMISSION_STATUSES:
                break
            await asyncio.sleep(1.0)

    @app.get("/submissions/{submission_id}/events")
    async def submission_events_stream(submission_id: str, request: Request):
        c = get_container(request)
        return StreamingResponse(submission_events(c, submission_id, request), media_type="text/event-stream")

    # --- OUTPUTS ---

    @app.get("/outputs/{kind}/{output_id}")
    async def get_output(kind: MediaKind, output_id: str, request: Request):
        output = await _call(get_container(request).store.get_output, kind, output_id)
        return {"kind": kind.value, **output}

    @app.patch("/outputs/{kind}/{output_id}/script")
    async def update_script(kind: MediaKind, output_id: str, data: ScriptUpdate, request: Request):
        """Edit a reviewed script while the output is SCRIPT_READY."""
        output = await _call(get_container(request).submissions.update_script, kind, output_id, data.script)
        return {"kind": kind.value, **output}

    @app.post("/outputs/{kind}/{output_id}/generate-media", status_code=202)
    async def generate_media(kind: MediaKind, output_id: str, request: Request, data: Optional[MediaRequest] = None):
        data = data or MediaRequest()
        return await _call(get_container(request).submissions.request_media, kind, output_id, data.customization)

    @app.post("/outputs/{kind}/{output_id}/regenerate", status_code=202)
    async def regenerate(kind: MediaKind, output_id: str, request: Request, data: Optional[RegenerateRequest] = None):
        data = data or RegenerateRequest()
        return await _call(
            get_container(request).submissions.regenerate, kind, output_id, data.script, data.customization
        )

    # --- JOBS ---

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        view = await _call(get_container(request).scheduler.get_status, job_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return view.model_dump(mode="json")

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, request: Request):
        c = get_container(request)
        view = await _call(c.scheduler.get_status, job_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Job not found")
        removed = await _call(c.scheduler.remove, job_id)
        if not removed:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "JOB_RUNNING", "message": "Running jobs cannot be removed"},
            )
        return {"status": "deleted", "id": job_id}

    # --- WEBHOOKS ---

    async def _acknowledge(handler: Callable[[dict], dict], body: bytes, source: str) -> JSONResponse:
        """Always answer 200 once authenticated; providers retry anything else."""
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            logger.warning("%s webhook with invalid JSON body", source)
            return JSONResponse({"success": False, "error": "Invalid JSON"}, headers=WEBHOOK_CORS_HEADERS)
        if not isinstance(data, dict):
            return JSONResponse({"success": False, "error": "Expected an object"}, headers=WEBHOOK_CORS_HEADERS)

        try:
            result = await asyncio.to_thread(handler, data)
        except Exception:
            logger.exception("%s webhook processing failed", source)
            result = {"success": False, "error": "Processing failed"}
        return JSONResponse(jsonable_encoder(result), headers=WEBHOOK_CORS_HEADERS)

    @app.post("/webhooks/render")
    async def render_webhook(request: Request):
        c = get_container(request)
        body = await request.body()
        secret = c.config.providers.render_webhook_secret
        if secret and not verify_signature(body, request.headers.get("signature"), secret):
            logger.warning("Render webhook rejected: bad signature")
            return JSONResponse({"error": "Invalid signature"}, status_code=401, headers=WEBHOOK_CORS_HEADERS)
        return await _acknowledge(c.render_webhooks.handle, body, "Render")

    @app.post("/webhooks/captions")
    async def caption_webhook(request: Request):
        c = get_container(request)
        return await _acknowledge(c.caption_webhooks.handle, await request.body(), "Caption")

    @app.options("/webhooks/render")
    @app.options("/webhooks/captions")
    async def webhook_options():
        return Response(status_code=200, headers=WEBHOOK_CORS_HEADERS)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("media_pipeline.api.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
