from __future__ import annotations

"""HTTP API surface for queueing commands and answering approval requests."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .results import OpsGateError
from .security import redact_text
from .service import VERSION, OpsGateService


TRACE_HEADER = "X-Opsgate-Trace-Id"


class IdentityContext(BaseModel):
    """Chat identity the request arrived with."""

    provider: str | None = None
    user_id: str | None = None
    group_id: str | None = None
    bot_id: str | None = None


class CommandRequest(BaseModel):
    """Payload for `/v1/commands`; `run_now` drains the queue before responding."""

    capability: str | None = None
    action: str | None = None
    command_kind: str = "capability"
    phase: str = "plan"
    requested_by: str = Field(min_length=1, max_length=200)
    actor_bot_id: str | None = Field(default=None, max_length=200)
    payload: dict[str, Any] = Field(default_factory=dict)
    context: IdentityContext | None = None
    request_id: str | None = Field(default=None, max_length=128)
    run_now: bool = False


class DecisionRequest(BaseModel):
    requested_by: str = Field(min_length=1, max_length=200)
    approval_flags: list[str] = Field(default_factory=list)
    actor_bot_id: str | None = Field(default=None, max_length=200)
    context: IdentityContext | None = None
    reason: str | None = Field(default=None, max_length=500)
    run_now: bool = True


class WorkerRunRequest(BaseModel):
    max_items: int | None = Field(default=None, ge=1)


class GrantCreateRequest(BaseModel):
    scope: str | None = None
    ttl_seconds: int | None = None


def _context(value: IdentityContext | None) -> dict[str, Any] | None:
    if value is None:
        return None
    return value.model_dump(exclude_none=True)


def create_app(service: OpsGateService) -> FastAPI:
    """Create API routes backed by `OpsGateService`."""

    app = FastAPI(title="opsgate API", version=VERSION)

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()[:120]
        trace_id, hits = redact_text(incoming)
        if not trace_id or hits:
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.audit.log_event(
                "api_internal_error",
                requester="api",
                decision="failed",
                request_id=trace_id,
                payload={"endpoint": request.url.path, "error_type": exc.__class__.__name__},
            )
            response = JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_SERVER_ERROR", "message": "Internal server error", "trace_id": trace_id},
            )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(OpsGateError)
    async def opsgate_error_handler(request: Request, exc: OpsGateError) -> JSONResponse:
        status = 404 if exc.code.endswith("_NOT_FOUND") else 400
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return service.health()

    @app.post("/v1/commands")
    def submit_command(request: CommandRequest) -> dict[str, Any]:
        envelope = service.enqueue(
            capability=request.capability,
            action=request.action,
            command_kind=request.command_kind,
            phase=request.phase,
            requested_by=request.requested_by,
            payload=request.payload,
            context=_context(request.context),
            actor_bot_id=request.actor_bot_id,
            request_id=request.request_id,
        )
        if not request.run_now:
            return {"request_id": envelope["request_id"], "queued": True}
        service.run_worker()
        return service.result_for(envelope["request_id"])

    @app.post("/v1/approvals/{token_id}/approve")
    def approve(token_id: str, request: DecisionRequest) -> dict[str, Any]:
        return service.approve(
            token_id,
            requested_by=request.requested_by,
            approval_flags=request.approval_flags,
            actor_bot_id=request.actor_bot_id,
            context=_context(request.context),
            run_now=request.run_now,
        )

    @app.post("/v1/approvals/{token_id}/deny")
    def deny(token_id: str, request: DecisionRequest) -> dict[str, Any]:
        return service.deny(
            token_id,
            requested_by=request.requested_by,
            actor_bot_id=request.actor_bot_id,
            context=_context(request.context),
            reason=request.reason,
            run_now=request.run_now,
        )

    @app.get("/v1/approvals/pending")
    def pending_approvals() -> list[dict[str, Any]]:
        return service.list_pending_approvals()

    @app.post("/v1/worker/run")
    def run_worker(request: WorkerRunRequest | None = None) -> dict[str, Any]:
        return service.run_worker(max_items=request.max_items if request else None)

    @app.get("/v1/results/{request_id}")
    def get_result(request_id: str) -> dict[str, Any]:
        return service.result_for(request_id)

    @app.get("/v1/grants/{requester}")
    def get_grant(requester: str) -> dict[str, Any]:
        return service.show_grant(requester)

    @app.post("/v1/grants/{requester}")
    def create_grant(requester: str, request: GrantCreateRequest) -> dict[str, Any]:
        return service.create_grant(requester, scope=request.scope, ttl_seconds=request.ttl_seconds)

    @app.delete("/v1/grants/{requester}")
    def revoke_grant(requester: str) -> dict[str, Any]:
        result = service.revoke_grant(requester)
        if not result["revoked"]:
            raise HTTPException(status_code=404, detail="Grant not found")
        return result

    @app.get("/v1/audit/summary")
    def audit_summary(
        range_value: str = Query(default="7d", alias="range"),
        requester: str | None = None,
    ) -> dict[str, Any]:
        return service.audit_summary(range_value=range_value, requester=requester)

    @app.get("/v1/policy")
    def policy_show() -> dict[str, Any]:
        try:
            return service.policy_show()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return app
