"""
Scholar Tokens — HTTP boundary.

FastAPI application exposing the token engine's caller-facing operations as
JSON endpoints:
- Achievement submission, per-user listing and the human review queue
- Token listing, evolution points, history and minting records
- Stacking eligibility and composite creation
- Per-user evolution summary

The routes hold no logic: they translate JSON to engine calls and engine
errors to the standard error envelope.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from scholar_tokens.config import settings
from scholar_tokens.domain.errors import ScholarTokensError

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class SubmitAchievementRequest(BaseModel):
    owner_id: UUID
    category: str
    grade_value: float | None = None
    proof_ref: str | None = Field(default=None, max_length=500)
    title: str = Field(default="", max_length=200)
    description: str = ""


class DecisionRequest(BaseModel):
    approve: bool
    decider_id: str = Field(min_length=1, max_length=100)


class AddPointsRequest(BaseModel):
    delta: int
    reason: str = Field(min_length=1, max_length=200)


class MintRequest(BaseModel):
    owner_id: UUID
    tx_ref: str = Field(min_length=1, max_length=200)
    chain: str = Field(min_length=1, max_length=50)


class CompositeRequest(BaseModel):
    rule_id: str
    token_ids: list[UUID]


class AppState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.engine: Any = None
        self.owns_engine: bool = False
        self.startup_time: datetime = datetime.now(timezone.utc)


state = AppState()


def _engine() -> Any:
    if state.engine is None:
        raise HTTPException(status_code=503, detail="Token engine not initialized")
    return state.engine


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — build the engine unless one was injected."""
    if state.engine is None:
        from scholar_tokens.orchestrator import bootstrap

        state.engine = bootstrap(settings)
        state.owns_engine = True
        logger.info("API connected to token registry")

    yield

    if state.owns_engine and state.engine is not None:
        await state.engine.close()
        state.engine = None
        state.owns_engine = False
    logger.info("Scholar Tokens API shut down")


app = FastAPI(
    title="Scholar Tokens",
    description="Achievement verification, evolution scoring and token stacking",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error handlers ─────────────────────────────────────────────


@app.exception_handler(ScholarTokensError)
async def engine_error_handler(request: Request, exc: ScholarTokensError):
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("Validation error on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request data",
                "details": [
                    {
                        "field": ".".join(str(loc) for loc in e["loc"]),
                        "message": e["msg"],
                    }
                    for e in exc.errors()
                ],
            }
        },
    )


# ── Routes: Achievements ───────────────────────────────────────


@app.post("/api/achievements", status_code=201)
async def submit_achievement(req: SubmitAchievementRequest):
    """Submit an achievement for verification."""
    outcome = await _engine().submit_achievement(req.model_dump())
    return _dump(outcome)


@app.get("/api/achievements/pending")
def pending_achievements(limit: int = 100):
    """Review queue: achievements awaiting a human decision."""
    achievements = _engine().pending_review(limit)
    return {"achievements": [_dump(a) for a in achievements]}


@app.get("/api/achievements/{achievement_id}")
def get_achievement(achievement_id: UUID):
    return _dump(_engine().get_achievement(achievement_id))


@app.get("/api/users/{owner_id}/achievements")
def list_achievements(owner_id: UUID, limit: int = 100):
    """A user's achievements, newest first, with their seed tokens."""
    records = _engine().list_achievements(owner_id, limit)
    return {"achievements": [_dump(r) for r in records], "total": len(records)}


@app.post("/api/achievements/{achievement_id}/decision")
def decide_achievement(achievement_id: UUID, req: DecisionRequest):
    """Apply a reviewer's approve/reject decision."""
    outcome = _engine().manual_decide_achievement(achievement_id, req.approve, req.decider_id)
    return _dump(outcome)


# ── Routes: Tokens ─────────────────────────────────────────────


@app.get("/api/users/{owner_id}/tokens")
def list_tokens(owner_id: UUID, include_consumed: bool = True):
    tokens = _engine().list_tokens(owner_id, include_consumed=include_consumed)
    return {"tokens": [_dump(t) for t in tokens], "total": len(tokens)}


@app.post("/api/tokens/{token_id}/points")
def add_points(token_id: UUID, req: AddPointsRequest):
    """Award evolution points to a token."""
    return _dump(_engine().add_evolution_points(token_id, req.delta, req.reason))


@app.get("/api/tokens/{token_id}/history")
def token_history(token_id: UUID):
    events = _engine().token_history(token_id)
    return {"events": [_dump(e) for e in events]}


@app.post("/api/tokens/{token_id}/mint")
def mark_minted(token_id: UUID, req: MintRequest):
    """Record the minting collaborator's transaction for a token."""
    return _dump(_engine().mark_minted(token_id, req.owner_id, req.tx_ref, req.chain))


@app.get("/api/users/{owner_id}/evolution-summary")
def evolution_summary(owner_id: UUID):
    return _dump(_engine().evolution_summary(owner_id))


# ── Routes: Stacking ───────────────────────────────────────────


@app.get("/api/users/{owner_id}/stacking")
def stacking(owner_id: UUID):
    """Eligible rules with their token selections, plus per-rule requirements."""
    engine = _engine()
    return {
        "eligible": [_dump(e) for e in engine.find_stacking_eligibility(owner_id)],
        "opportunities": [
            {
                **_dump(o),
                "missing": [s.model_dump(mode="json") for s in o.missing],
            }
            for o in engine.stacking_opportunities(owner_id)
        ],
    }


@app.post("/api/users/{owner_id}/composites", status_code=201)
def create_composite(owner_id: UUID, req: CompositeRequest):
    """Consume the chosen tokens and mint a composite."""
    return _dump(_engine().create_composite_token(owner_id, req.rule_id, req.token_ids))


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    engine = state.engine
    return JSONResponse({
        "status": "healthy" if engine is not None else "starting",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "registry_available": engine is not None,
        "assessor_enabled": engine is not None and engine.assessor is not None,
        "stacking_rules": len(engine.stacking.rules) if engine is not None else 0,
    })


def run() -> None:
    """Serve the API on the configured host and port."""
    import uvicorn

    from scholar_tokens.orchestrator import configure_logging

    configure_logging(settings)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
