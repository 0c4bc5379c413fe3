"""FastAPI application wiring for the geoscan service.

Terms used in this file:
- Caller: the user id in the `X-User-Id` header; authentication happens upstream.
- Operator: the admin id in the `X-Operator-Id` header, recorded on admin ledger entries.
- Background task: FastAPI runs the pipeline after the create response is sent.

Serve with `uvicorn geoscan_api.main:create_app --factory` or the `geoscan-api`
console script.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .app.app_config import AppConfig
from .app.errors import AccountNotFound, InsufficientBalance, ProviderError
from .app.ledger import Ledger
from .app.llm import ChatClientFactory, default_client_factory
from .app.models import (
    CreateTaskRequest,
    CreateTaskResponse,
    PointsSummary,
    ProviderTestRequest,
    ProviderTestResponse,
    RechargeRequest,
    RechargeResponse,
    RunRecord,
    TaskRecord,
)
from .app.orchestrator import TaskPipeline
from .app.pricing import DEFAULT_UNIT_PRICE
from .app.providers import resolve_for_connectivity_test
from .app.settings import Settings, get_settings
from .app.storage import PipelineStorage, PostgresStorage

logger = logging.getLogger(__name__)

RECENT_LEDGER_ENTRIES = 50
CONNECTIVITY_SYSTEM_PROMPT = "You are a connectivity test endpoint."
CONNECTIVITY_USER_PROMPT = "Reply with: ok"
CONNECTIVITY_PREVIEW_CHARS = 200


def create_app(
    *,
    storage: PipelineStorage | None = None,
    settings_override: Settings | None = None,
    client_factory: ChatClientFactory | None = None,
    config_loader: Callable[[], AppConfig] | None = None,
) -> FastAPI:
    """Application factory.

    Raises RuntimeError right away when neither a storage backend nor
    `GEOSCAN_DATABASE_URL` is available.
    """
    settings = settings_override or get_settings()
    logging.getLogger("geoscan_api").setLevel(settings.log_level.upper())

    database_url = settings.database_url.strip()
    if storage is None and not database_url:
        raise RuntimeError(
            "Missing database URL. Set GEOSCAN_DATABASE_URL before starting the app."
        )
    task_storage: PipelineStorage = storage or PostgresStorage(database_url)
    factory = client_factory or default_client_factory
    pipeline = TaskPipeline(
        storage=task_storage,
        settings=settings,
        client_factory=factory,
        config_loader=config_loader,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.storage.migrate()
        yield

    app = FastAPI(title=settings.app_name, lifespan=lifespan if storage is None else None)
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.storage = task_storage
    app.state.pipeline = pipeline
    app.state.ledger = pipeline.ledger
    app.state.client_factory = factory
    if storage is not None:
        task_storage.migrate()

    @app.exception_handler(InsufficientBalance)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalance
    ) -> JSONResponse:
        return JSONResponse(status_code=403, content=exc.to_payload())

    @app.exception_handler(AccountNotFound)
    async def account_not_found_handler(request: Request, exc: AccountNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/tasks", response_model=CreateTaskResponse)
    def create_task(
        payload: CreateTaskRequest,
        background_tasks: BackgroundTasks,
        request: Request,
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> CreateTaskResponse:
        owner_id = _require_header(x_user_id, "X-User-Id")
        task_pipeline: TaskPipeline = request.app.state.pipeline
        try:
            submitted = task_pipeline.submit(
                owner_id=owner_id,
                prompt=payload.prompt,
                mode=payload.mode,
                selected_models=payload.models,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

        background_tasks.add_task(
            task_pipeline.run_detached,
            submitted.task.task_id,
            submitted.config,
        )
        return CreateTaskResponse(
            **submitted.task.model_dump(),
            remaining_points=submitted.remaining_points,
        )

    @app.get("/tasks", response_model=list[TaskRecord])
    def list_tasks(
        request: Request,
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> list[TaskRecord]:
        owner_id = _require_header(x_user_id, "X-User-Id")
        return request.app.state.storage.list_tasks(owner_id)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> TaskRecord:
        owner_id = _require_header(x_user_id, "X-User-Id")
        return _owned_task(request.app.state.storage, task_id, owner_id)

    @app.get("/tasks/{task_id}/runs", response_model=list[RunRecord])
    def list_task_runs(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> list[RunRecord]:
        owner_id = _require_header(x_user_id, "X-User-Id")
        task_storage: PipelineStorage = request.app.state.storage
        _owned_task(task_storage, task_id, owner_id)
        return task_storage.list_runs(task_id)

    @app.get("/billing/pricing")
    def pricing(request: Request) -> dict[str, Any]:
        config = request.app.state.pipeline.load_config()
        table = config.billing.model_dump(by_alias=True)
        table["defaultUnitPrice"] = DEFAULT_UNIT_PRICE
        return table

    @app.get("/me/points", response_model=PointsSummary)
    def my_points(
        request: Request,
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> PointsSummary:
        user_id = _require_header(x_user_id, "X-User-Id")
        ledger: Ledger = request.app.state.ledger
        return PointsSummary(
            balance=ledger.balance(user_id),
            entries=ledger.recent_entries(user_id, limit=RECENT_LEDGER_ENTRIES),
        )

    @app.post("/admin/users/{user_id}/recharge", response_model=RechargeResponse)
    def recharge(
        user_id: str,
        payload: RechargeRequest,
        request: Request,
        x_operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
    ) -> RechargeResponse:
        operator_id = _require_header(x_operator_id, "X-Operator-Id")
        ledger: Ledger = request.app.state.ledger
        ledger.open_account(user_id)
        entry = ledger.credit_entry(
            user_id,
            payload.amount,
            payload.description or f"Admin recharge {payload.amount} points",
            entry_type="ADMIN_ADD",
            operator_id=operator_id,
        )
        return RechargeResponse(user_id=user_id, points=entry.balance, entry=entry)

    @app.post("/admin/providers/test", response_model=ProviderTestResponse)
    def test_provider(payload: ProviderTestRequest, request: Request) -> ProviderTestResponse:
        app_settings: Settings = request.app.state.settings
        config = request.app.state.pipeline.load_config()
        resolved = resolve_for_connectivity_test(
            config,
            payload.provider,
            fallback_model=app_settings.fallback_model,
        )
        if resolved is None:
            return ProviderTestResponse(
                success=False,
                provider=payload.provider or "",
                model="",
                error="No usable provider configuration (baseUrl/apiKey missing or disabled)",
            )
        try:
            client = request.app.state.client_factory(resolved)
            text = client.complete(
                messages=[
                    {"role": "system", "content": CONNECTIVITY_SYSTEM_PROMPT},
                    {"role": "user", "content": CONNECTIVITY_USER_PROMPT},
                ],
                max_tokens=16,
                temperature=0,
                timeout_s=app_settings.provider_timeout_s,
            )
        except ProviderError as exc:
            logger.warning(
                "provider_test event=failed provider=%s model=%s reason=%s",
                resolved.provider,
                resolved.model,
                exc,
            )
            return ProviderTestResponse(
                success=False,
                provider=resolved.provider,
                model=resolved.model,
                error=str(exc),
            )
        logger.info("provider_test event=ok provider=%s model=%s", resolved.provider, resolved.model)
        return ProviderTestResponse(
            success=True,
            provider=resolved.provider,
            model=resolved.model,
            preview=text[:CONNECTIVITY_PREVIEW_CHARS],
        )

    return app


def _require_header(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise HTTPException(status_code=401, detail=f"Missing {name} header")
    return value.strip()


def _owned_task(task_storage: PipelineStorage, task_id: str, owner_id: str) -> TaskRecord:
    task = task_storage.get_task(task_id)
    if task is None or task.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def main() -> None:
    """Console entry point: serve the app factory with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "geoscan_api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
