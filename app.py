# app.py — QuizFeed personalization host
# - One SessionRegistry per process, kept on app.state
# - Interaction ingestion schedules generation in the background

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

import db
from engines.config import PersonalizationConfig
from engines.interactions import InteractionEvent
from env_validation import validate_environment
from event_sink import DatabaseEventSink
from personalization import SessionRegistry, build_registry
from question_generator import LLMQuestionGenerator
from schemas import InteractionRequest
from storage import SqliteContentRepository, SqliteProfileStore
from topic_relations import TopicRelationMap

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)


def create_registry() -> SessionRegistry:
    config = PersonalizationConfig.from_env()
    return build_registry(
        store=SqliteProfileStore(config.weights),
        generator=LLMQuestionGenerator(timeout=config.trigger.generator_timeout),
        repository=SqliteContentRepository(),
        events=DatabaseEventSink.from_env(),
        relations=TopicRelationMap.from_env(),
        config=config,
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        _configure_logging()
        validate_environment()
        db.init()
        app.state.sessions = create_registry()
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    await app.state.sessions.drain()


app = FastAPI(title="QuizFeed Personalization", version="1.0.0", lifespan=_lifespan)


def _registry(request: Request) -> SessionRegistry:
    registry: Optional[SessionRegistry] = getattr(request.app.state, "sessions", None)
    if registry is None:
        registry = create_registry()
        request.app.state.sessions = registry
    return registry


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.post("/interactions")
async def record_interaction(request: Request, body: InteractionRequest):
    try:
        event = InteractionEvent.from_payload(body.to_payload())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session = await _registry(request).get(body.user_id)
    result = await session.record(event)
    if not result.accepted:
        raise HTTPException(status_code=400, detail=result.diagnostic.value if result.diagnostic else "rejected")
    payload = result.to_dict()
    payload["sessionState"] = session.state.value
    return payload


@app.get("/users/{user_id}/profile")
async def get_profile(request: Request, user_id: str):
    session = await _registry(request).get(user_id)
    return session.snapshot()


@app.get("/users/{user_id}/topic-spec")
async def get_topic_spec(request: Request, user_id: str):
    session = await _registry(request).get(user_id)
    return session.build_spec().to_dict()


@app.get("/generation-events")
def list_generation_events(user_id: Optional[str] = None, limit: int = 50):
    limit = max(1, min(int(limit), 500))
    return {"events": db.list_generation_events(user_id=user_id, limit=limit)}
