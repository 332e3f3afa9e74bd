"""FastAPI app factory.

Endpoints are thin wrappers over the engine's ingress, registry and stores.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_lifecycle import __version__
from crm_lifecycle.server.config import ServerSettings
from crm_lifecycle.server.models import (
    ApiActionRecord,
    ApiDefinition,
    ApiInstance,
    ApiState,
    ApiTransitionResult,
    CreateInstanceRequest,
    FieldChangesRequest,
    SubmitEventRequest,
    SweepResult,
)
from crm_lifecycle.statemachine.config import LifecycleSettings
from crm_lifecycle.statemachine.definitions.model import StateMachineDefinition
from crm_lifecycle.statemachine.errors import (
    BusyError,
    DefinitionError,
    FatalActionError,
    InstanceExistsError,
    InstanceNotFoundError,
    LifecycleError,
    UnknownEventError,
    UnknownObjectTypeError,
)
from crm_lifecycle.statemachine.lifecycle import LifecycleEngine, build_engine
from crm_lifecycle.statemachine.runtime.instance import Instance, TransitionResult

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[LifecycleError], int], ...] = (
    (InstanceNotFoundError, 404),
    (UnknownObjectTypeError, 404),
    (InstanceExistsError, 409),
    (BusyError, 409),
    (UnknownEventError, 422),
    (FatalActionError, 422),
    (DefinitionError, 400),
)


def _status_for(error: LifecycleError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def _to_api_instance(instance: Instance) -> ApiInstance:
    return ApiInstance.model_validate(instance.model_dump(mode="json"))


def _to_api_result(result: TransitionResult) -> ApiTransitionResult:
    return ApiTransitionResult(
        accepted=result.accepted,
        from_state=result.from_state,
        to_state=result.to_state,
        reason=result.reason.value,
        version=result.version,
        event=result.event,
    )


def _to_api_definition(definition: StateMachineDefinition) -> ApiDefinition:
    states = [
        ApiState(
            name=s.name,
            label=s.label,
            is_final=s.is_final,
            events=sorted({t.event for t in s.transitions}),
            timeout_event=s.timeout.event if s.timeout else None,
            timeout_seconds=s.timeout.duration.total_seconds() if s.timeout else None,
        )
        for s in definition.states.values()
    ]
    return ApiDefinition(
        name=definition.name,
        object_type=definition.object_type,
        label=definition.label,
        initial=definition.initial,
        states=states,
        events=sorted(definition.events),
    )


def create_app(engine: LifecycleEngine | None = None) -> FastAPI:
    settings = ServerSettings()
    owns_engine = engine is None
    if engine is None:
        engine = build_engine(LifecycleSettings())
    lifecycle = engine

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        lifecycle.start(background_sweep=settings.scheduler_enabled)
        try:
            yield
        finally:
            lifecycle.scheduler.stop()
            if owns_engine:
                lifecycle.stop()

    app = FastAPI(
        title="CRM Lifecycle",
        version=__version__,
        description="REST API over the CRM entity lifecycle state machine engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and engine for request handlers that want to read them.
    app.state.settings = settings
    app.state.engine = lifecycle

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LifecycleError)
    async def lifecycle_error(_request: Request, exc: LifecycleError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("Unhandled lifecycle error", extra={"error": str(exc)})
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/v1/definitions", response_model=list[ApiDefinition])
    def list_definitions() -> list[ApiDefinition]:
        return [
            _to_api_definition(lifecycle.registry.get(t)) for t in lifecycle.registry.object_types()
        ]

    @app.get("/api/v1/definitions/{object_type}", response_model=ApiDefinition)
    def get_definition(object_type: str) -> ApiDefinition:
        return _to_api_definition(lifecycle.registry.get(object_type))

    @app.put("/api/v1/definitions/{object_type}", response_model=ApiDefinition)
    def reload_definition(object_type: str, raw: dict[str, Any] = Body(...)) -> ApiDefinition:
        declared = raw.get("object")
        if declared != object_type:
            raise HTTPException(
                status_code=400,
                detail=f"Definition declares object {declared!r}, expected {object_type!r}",
            )
        return _to_api_definition(lifecycle.reload_definition(raw))

    @app.post(
        "/api/v1/instances/{object_type}", response_model=ApiInstance, status_code=201
    )
    def create_instance(object_type: str, req: CreateInstanceRequest) -> ApiInstance:
        instance = lifecycle.ingress.create_instance(object_type, req.entity_id, req.fields)
        return _to_api_instance(instance)

    @app.get("/api/v1/instances/{object_type}/{entity_id}", response_model=ApiInstance)
    def get_instance(object_type: str, entity_id: str) -> ApiInstance:
        lifecycle.registry.get(object_type)
        instance = lifecycle.ingress.get_instance(object_type, entity_id)
        if instance is None:
            raise HTTPException(status_code=404, detail="Instance not found")
        return _to_api_instance(instance)

    @app.delete("/api/v1/instances/{object_type}/{entity_id}", status_code=204)
    def discard_instance(object_type: str, entity_id: str) -> Response:
        lifecycle.ingress.discard_instance(object_type, entity_id)
        return Response(status_code=204)

    @app.post(
        "/api/v1/instances/{object_type}/{entity_id}/events",
        response_model=ApiTransitionResult,
    )
    def submit_event(
        object_type: str, entity_id: str, req: SubmitEventRequest
    ) -> ApiTransitionResult:
        result = lifecycle.ingress.submit_event(
            object_type, entity_id, req.event, req.payload, origin=req.origin
        )
        return _to_api_result(result)

    @app.post(
        "/api/v1/instances/{object_type}/{entity_id}/field-changes",
        response_model=ApiTransitionResult,
    )
    def report_field_changes(
        object_type: str, entity_id: str, req: FieldChangesRequest
    ) -> ApiTransitionResult:
        result = lifecycle.ingress.report_field_changes(object_type, entity_id, req.changes)
        return _to_api_result(result)

    @app.get(
        "/api/v1/instances/{object_type}/{entity_id}/actions",
        response_model=list[ApiActionRecord],
    )
    def list_actions(object_type: str, entity_id: str) -> list[ApiActionRecord]:
        records = lifecycle.action_records.list(object_type, entity_id)
        return [ApiActionRecord.model_validate(r.model_dump(mode="json")) for r in records]

    @app.post("/api/v1/sweep", response_model=SweepResult)
    def sweep() -> SweepResult:
        return SweepResult(submitted=len(lifecycle.sweep()))

    return app
