from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from parley.config.settings import AppSettings
from parley.ledger.errors import (
    AiDisabled,
    ChannelUnavailable,
    ConflictError,
    CoreError,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from parley.ledger.models import DeliveryStatus, JobFilter, public_view
from parley.orchestrator.service import Orchestrator, build_orchestrator
from parley.shared.logging import get_logger, log_event
from parley.validation.validator import SchemaValidator

STATUS_CODES = {
    NotFound: 404,
    InvalidTransition: 409,
    ConflictError: 409,
    ValidationError: 422,
    StoreUnavailable: 503,
    ChannelUnavailable: 503,
    AiDisabled: 409,
}


def _status_for(exc: CoreError) -> int:
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    app = FastAPI(title="Parley")
    logger = get_logger("parley.api")

    if orchestrator is None:
        orchestrator = build_orchestrator(AppSettings.from_env())
    validator = SchemaValidator()
    app.state.orchestrator = orchestrator
    app.state.validator = validator

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError):
        status_code = _status_for(exc)
        log_event(
            logger,
            "request.rejected",
            path=request.url.path,
            error=type(exc).__name__,
            status=status_code,
            detail=str(exc),
        )
        return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.post("/v1/orgs/{org_id}/jobs")
    async def create_job(
        org_id: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        validator.validate_job_request(body)
        job = orchestrator.enqueue(
            org_id,
            body["conversation_id"],
            body["job_type"],
            priority=body.get("priority", 0),
            agent_type=body.get("agent_type"),
            source=body.get("source"),
            force_agent=body.get("force_agent", False),
            data=body.get("data"),
            actor=x_actor_id,
        )
        return JSONResponse(status_code=201, content=public_view(job))

    @app.get("/v1/orgs/{org_id}/jobs")
    async def list_jobs(
        org_id: str,
        status: str | None = None,
        agent_type: str | None = None,
        conversation_id: str | None = None,
    ):
        job_filter = JobFilter(status=status, agent_type=agent_type, conversation_id=conversation_id)
        return [public_view(job) for job in orchestrator.list_jobs(org_id, job_filter)]

    @app.get("/v1/orgs/{org_id}/jobs/{job_id}")
    async def get_job(org_id: str, job_id: str):
        return public_view(orchestrator.get_job(org_id, job_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:dispatch")
    async def dispatch_job(
        org_id: str, job_id: str, x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")
    ):
        return public_view(orchestrator.dispatch(org_id, job_id, actor=x_actor_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:complete")
    async def complete_job(
        org_id: str,
        job_id: str,
        body: Dict[str, Any] | None = None,
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        result = (body or {}).get("result")
        return public_view(orchestrator.complete(org_id, job_id, result, actor=x_actor_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:fail")
    async def fail_job(
        org_id: str,
        job_id: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        error = body.get("error")
        if not isinstance(error, str) or not error:
            raise ValidationError("error is required")
        return public_view(orchestrator.fail(org_id, job_id, error, actor=x_actor_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:cancel")
    async def cancel_job(
        org_id: str, job_id: str, x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")
    ):
        return public_view(orchestrator.cancel(org_id, job_id, actor=x_actor_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:retry")
    async def retry_job(
        org_id: str, job_id: str, x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")
    ):
        return public_view(orchestrator.retry(org_id, job_id, actor=x_actor_id))

    @app.post("/v1/orgs/{org_id}/jobs/{job_id}:reassign")
    async def reassign_job(
        org_id: str,
        job_id: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        agent_type = body.get("agent_type")
        if not isinstance(agent_type, str) or not agent_type:
            raise ValidationError("agent_type is required")
        return public_view(orchestrator.reassign(org_id, job_id, agent_type, actor=x_actor_id))

    @app.get("/v1/orgs/{org_id}/queue/status")
    async def queue_status(org_id: str):
        return orchestrator.queue_status(org_id)

    @app.get("/v1/orgs/{org_id}/conversations")
    async def list_conversations(org_id: str):
        return [
            {"state": public_view(state), "decision": asdict(decision)}
            for state, decision in orchestrator.list_gating_states(org_id)
        ]

    @app.get("/v1/orgs/{org_id}/conversations/{conversation_id}/gating")
    async def get_gating(org_id: str, conversation_id: str, source: str | None = None):
        decision = orchestrator.get_gating_decision(org_id, conversation_id, source)
        try:
            state = public_view(orchestrator.get_gating_state(org_id, conversation_id))
        except NotFound:
            state = None
        return {"decision": asdict(decision), "state": state}

    @app.post("/v1/orgs/{org_id}/conversations/{conversation_id}/messages")
    async def inbound_message(org_id: str, conversation_id: str, body: Dict[str, Any] | None = None):
        body = body or {}
        validator.validate_inbound_message(body)
        state = orchestrator.on_inbound_message(
            org_id, conversation_id, source=body.get("source"), at=body.get("at")
        )
        return public_view(state)

    @app.post("/v1/orgs/{org_id}/conversations/{conversation_id}/actions")
    async def conversation_action(
        org_id: str,
        conversation_id: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        validator.validate_conversation_action(body)
        outcome = orchestrator.apply_conversation_action(org_id, conversation_id, body, actor=x_actor_id)
        return {"action": body["type"], "result": public_view(outcome)}

    @app.get("/v1/orgs/{org_id}/settings/gating")
    async def get_gating_policy(org_id: str):
        return public_view(orchestrator.get_gating_policy(org_id))

    @app.put("/v1/orgs/{org_id}/settings/gating")
    async def put_gating_policy(
        org_id: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        validator.validate_gating_policy(body)
        policy = orchestrator.put_gating_policy(
            org_id,
            body["source_defaults"],
            fallback_enabled=body.get("fallback_enabled", False),
            mute_window_minutes=body.get("mute_window_minutes"),
            actor=x_actor_id,
        )
        return public_view(policy)

    @app.get("/v1/orgs/{org_id}/audit")
    async def list_audit(org_id: str, limit: int = 100):
        return [asdict(entry) for entry in orchestrator.list_audit(org_id, limit)]

    @app.get("/v1/orgs/{org_id}/webhooks/logs")
    async def list_webhook_logs(org_id: str, source: str | None = None, limit: int = 50):
        return [asdict(item) for item in orchestrator.list_webhook_deliveries(org_id, source, limit)]

    @app.post("/v1/orgs/{org_id}/webhooks/{source}")
    async def inbound_webhook(
        org_id: str,
        source: str,
        body: Dict[str, Any],
        x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ):
        try:
            validator.validate_inbound_webhook(body)
        except ValidationError as exc:
            orchestrator.record_webhook_delivery(
                org_id,
                source,
                DeliveryStatus.ERROR,
                payload=body,
                event_id=body.get("event_id") if isinstance(body.get("event_id"), str) else None,
                error=str(exc),
            )
            raise
        outcome = orchestrator.handle_inbound_webhook(org_id, source, body, actor=x_actor_id)
        return JSONResponse(
            status_code=202,
            content={
                "delivery_id": outcome.delivery.delivery_id,
                "gating": public_view(outcome.gating),
                "job": public_view(outcome.job) if outcome.job is not None else None,
                "skipped": outcome.skipped,
            },
        )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
