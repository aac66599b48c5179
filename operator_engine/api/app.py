"""
Operator Engine API — FastAPI endpoints.

Exposes the engine for:
- Risk rule runs and flag triage
- Next-best-action runs, listing, playbooks and execution
- Generic action runs (preview / execute)
- Memory summary and the explicit apply step

The caller's identity arrives in the ``X-Actor-Id`` header; resolving a
session into that id happens upstream.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from operator_engine.api.ratelimit import SlidingWindowRateLimiter
from operator_engine.config import EngineSettings
from operator_engine.engine.service import OperatorEngine, parse_range
from operator_engine.errors import (
    AuthenticationError,
    EngineError,
    ErrorResponse,
    RateLimitError,
)
from operator_engine.logging import configure_logging, get_logger
from operator_engine.models.context import RuleContext
from operator_engine.sanitize import sanitize_error_message

logger = get_logger("operator_engine.api")


# --- Request Models ---

class RunRulesRequest(BaseModel):
    context: Optional[RuleContext] = None
    scope: Optional[str] = None


class RiskStatusRequest(BaseModel):
    status: str
    snoozed_until: Optional[datetime] = None


class ExecuteRequest(BaseModel):
    action_key: str
    mode: str = "execute"
    params: dict = {}


class ActionRunRequest(BaseModel):
    action_key: str
    mode: str = "preview"
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    next_action_id: Optional[str] = None
    params: dict = {}


class ApplySuggestionRequest(BaseModel):
    type: str
    rule_key: str
    suggested_delta: Optional[int] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


def require_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    if not x_actor_id or not x_actor_id.strip():
        raise AuthenticationError("Missing X-Actor-Id header")
    return x_actor_id.strip()


# --- Application Factory ---

def create_app(
    engine: Optional[OperatorEngine] = None,
    settings: Optional[EngineSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or (engine.settings if engine else EngineSettings())
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="Operator Engine API",
        description="Risk flags, next-best-actions and operator learning",
        version="0.1.0",
    )

    eng = engine or OperatorEngine(settings=settings)
    execute_limiter = SlidingWindowRateLimiter(
        settings.execute_rate_limit, settings.rate_limit_window_seconds
    )
    run_limiter = SlidingWindowRateLimiter(
        settings.run_rate_limit, settings.rate_limit_window_seconds
    )

    app.state.engine = eng
    app.state.settings = settings
    app.state.execute_limiter = execute_limiter
    app.state.run_limiter = run_limiter

    # === ERROR HANDLING ===

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        logger.warning(
            "api.error",
            path=request.url.path,
            code=exc.code,
            message=sanitize_error_message(exc.message),
        )
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(mode="json"),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]
        response = ErrorResponse(
            code="VALIDATION_ERROR",
            message="Invalid request",
            details={"fields": fields},
        )
        return JSONResponse(status_code=400, content=response.model_dump(mode="json"))

    # === HEALTH ===

    @app.get("/health")
    def health():
        """Health check."""
        last = eng.last_run_at()
        return {
            "status": "healthy",
            "next_actions_last_run_at": last.isoformat() if last else None,
            "telemetry_pending": eng.telemetry.pending,
        }

    # === RISK ===

    @app.post("/risk/run-rules")
    def run_risk_rules(req: Optional[RunRulesRequest] = None, actor: str = Depends(require_actor)):
        """Evaluate risk rules against a snapshot and upsert flags."""
        run_limiter.check(actor, "run")
        req = req or RunRulesRequest()
        return eng.run_risk_rules(context=req.context, scope=req.scope)

    @app.get("/risk")
    def list_risk_flags(status: Optional[str] = None, actor: str = Depends(require_actor)):
        """List risk flags, most severe first."""
        return [f.model_dump(mode="json") for f in eng.list_risk_flags(status)]

    @app.post("/risk/{flag_id}/status")
    def set_risk_status(flag_id: str, req: RiskStatusRequest, actor: str = Depends(require_actor)):
        """Dismiss, resolve, snooze or reopen a flag."""
        flag = eng.set_risk_status(flag_id, req.status, req.snoozed_until)
        return flag.model_dump(mode="json")

    # === NEXT BEST ACTIONS ===

    @app.post("/next-actions/run")
    def run_next_actions(
        req: Optional[RunRulesRequest] = None,
        scope: Optional[str] = None,
        actor: str = Depends(require_actor),
    ):
        """Generate next actions for a scope."""
        run_limiter.check(actor, "run")
        req = req or RunRulesRequest()
        return eng.run_next_actions(scope=scope or req.scope, actor_user_id=actor, context=req.context)

    @app.get("/next-actions")
    def list_next_actions(
        scope: Optional[str] = None,
        n: int = 10,
        status: Optional[str] = "queued",
        actor: str = Depends(require_actor),
    ):
        """Top-ranked next actions for a scope."""
        return [a.model_dump(mode="json") for a in eng.list_next_actions(scope, n, status)]

    @app.get("/next-actions/{next_action_id}/template")
    def next_action_template(next_action_id: str, actor: str = Depends(require_actor)):
        """Playbook for the rule behind a next action."""
        return eng.next_action_template(next_action_id).model_dump(mode="json")

    @app.post("/next-actions/{next_action_id}/execute")
    def execute_next_action(
        next_action_id: str, req: ExecuteRequest, actor: str = Depends(require_actor)
    ):
        """Run an action against one next-best-action."""
        if req.mode == "execute":
            execute_limiter.check(actor, "execute")
        result = eng.run_action(
            req.action_key,
            req.mode,
            actor,
            next_action_id=next_action_id,
            params=req.params,
        )
        return result.model_dump(mode="json")

    @app.post("/actions/run")
    def run_action(req: ActionRunRequest, actor: str = Depends(require_actor)):
        """Preview or execute any registered action."""
        if req.mode == "execute":
            execute_limiter.check(actor, "execute")
        result = eng.run_action(
            req.action_key,
            req.mode,
            actor,
            entity_type=req.entity_type,
            entity_id=req.entity_id,
            next_action_id=req.next_action_id,
            params=req.params,
        )
        return result.model_dump(mode="json")

    # === MEMORY ===

    @app.get("/memory/summary")
    def memory_summary(
        range_key: str = Query(default="7d", alias="range"),
        actor: str = Depends(require_actor),
    ):
        """Pattern-learning summary, trend diffs and pattern alerts."""
        return eng.summary(actor, parse_range(range_key))

    @app.post("/memory/apply")
    def apply_suggestion(req: ApplySuggestionRequest, actor: str = Depends(require_actor)):
        """Explicitly apply one policy suggestion."""
        result = eng.apply_suggestion(
            actor,
            req.type,
            req.rule_key,
            suggested_delta=req.suggested_delta,
            entity_type=req.entity_type,
            entity_id=req.entity_id,
        )
        return {"ok": True, **result}

    return app
