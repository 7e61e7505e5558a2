from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from osdl_runtime.config import RuntimeSettings
from osdl_runtime.error_channel import ErrorChannel, LoggingErrorChannel, PubSubErrorChannel
from osdl_runtime.logging_config import set_session_id, setup_logging
from osdl_runtime.models.page import PageDefinition
from osdl_runtime.models.rendered import RenderedNode
from osdl_runtime.page_runtime import PageRuntime
from osdl_runtime.session_store import PreviewSession, PreviewSessionStore


class CreatePreviewRequest(BaseModel):
    page: PageDefinition
    ambient: dict[str, Any] = Field(default_factory=dict, description="viewport, locale, user, page and site facts")


class UpdateStateRequest(BaseModel):
    node_id: str
    updates: dict[str, Any]


class DispatchEventRequest(BaseModel):
    node_id: str
    trigger: str
    value: Any = None


class UpdateAmbientRequest(BaseModel):
    viewport: dict[str, Any] | None = None
    locale: str | None = None
    user: dict[str, Any] | None = None
    page: dict[str, Any] | None = None
    site: dict[str, Any] | None = None


class PreviewResponse(BaseModel):
    id: str
    page_id: str
    tree: list[RenderedNode]
    errors: list[dict[str, Any]] = Field(default_factory=list)
    action_results: dict[str, Any] | None = None


# Environment configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")
PROJECT_ID = os.getenv("PROJECT_ID")

# Setup logging
setup_logging(environment=ENVIRONMENT, project_id=PROJECT_ID)
logger = logging.getLogger(__name__)

settings = RuntimeSettings.from_env()
session_store = PreviewSessionStore()

app = FastAPI(title="OSDL Page Runtime Preview", version="0.1.0")


def _error_channel() -> ErrorChannel:
    # Publish to Pub/Sub in production, keep errors on the session in dev
    if PROJECT_ID and ENVIRONMENT != "dev":
        return PubSubErrorChannel(project_id=PROJECT_ID, topic_id=settings.error_topic)
    return LoggingErrorChannel()


def _get_session(session_id: str) -> PreviewSession:
    session = session_store.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Preview session not found")
    set_session_id(session.id)
    return session_store.touch(session.id)


async def _respond(session: PreviewSession, action_results: dict[str, Any] | None = None) -> PreviewResponse:
    tree = await session.runtime.settle()
    channel = session.runtime.error_channel
    errors = list(channel.reported) if isinstance(channel, LoggingErrorChannel) else []
    return PreviewResponse(
        id=session.id,
        page_id=session.page_id,
        tree=tree,
        errors=errors,
        action_results=action_results,
    )


@app.post("/v1/previews", response_model=PreviewResponse)
async def create_preview(request: CreatePreviewRequest) -> PreviewResponse:
    try:
        runtime = PageRuntime(
            request.page,
            settings=settings,
            error_channel=_error_channel(),
            ambient=request.ambient,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    session = session_store.create_session(runtime)
    set_session_id(session.id)
    logger.info("Created preview session", extra={"page_id": session.page_id})

    runtime.render()
    await runtime.load_page_data()
    return await _respond(session)


@app.get("/v1/previews/{session_id}", response_model=PreviewResponse)
async def get_preview(session_id: str) -> PreviewResponse:
    return await _respond(_get_session(session_id))


@app.post("/v1/previews/{session_id}/state", response_model=PreviewResponse)
async def update_state(session_id: str, request: UpdateStateRequest) -> PreviewResponse:
    session = _get_session(session_id)
    session.runtime.update_state(request.node_id, request.updates)
    return await _respond(session)


@app.post("/v1/previews/{session_id}/events", response_model=PreviewResponse)
async def dispatch_event(session_id: str, request: DispatchEventRequest) -> PreviewResponse:
    session = _get_session(session_id)
    if session.runtime.find(request.node_id) is None:
        raise HTTPException(status_code=404, detail="Node is not mounted")
    results = await session.runtime.dispatch_event(request.node_id, request.trigger, request.value)
    return await _respond(session, action_results=results)


@app.patch("/v1/previews/{session_id}/ambient", response_model=PreviewResponse)
async def update_ambient(session_id: str, request: UpdateAmbientRequest) -> PreviewResponse:
    session = _get_session(session_id)
    session.runtime.set_ambient(**request.model_dump(exclude_none=True))
    return await _respond(session)


@app.delete("/v1/previews/{session_id}")
async def delete_preview(session_id: str) -> JSONResponse:
    session = session_store.delete_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Preview session not found")
    await session.runtime.aclose()
    return JSONResponse({"status": "deleted"})


@app.get("/health")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok"})
