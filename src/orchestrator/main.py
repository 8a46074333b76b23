"""Response Gateway - FastAPI Application.

Provides:
- Prompt submission fanned out to every enabled provider
- Polling, listing and deletion of response aggregates
- Retry, regeneration, manual correction and selection of responses
- Usage statistics and provider status
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import (
    GenerationSettings,
    OverallStatus,
    ResponseAggregate,
    ResultStatus,
    StatsSummary,
    TokenUsage,
    UserContext,
)
from providers.caller import ProviderCaller, ProviderCallerError
from providers.registry import ProviderRegistry
from storage.aggregates import AggregateStore
from storage.projects import ProjectStore
from orchestrator.auth import AuthConfig, AuthMiddleware
from orchestrator.service import OrchestratorError, ResponseOrchestrator

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


# Request/Response Models
class GenerateRequest(BaseModel):
    """Prompt submission."""
    prompt: str = Field(..., min_length=1, max_length=10000)
    project_id: Optional[str] = Field(default=None, description="Existing project; created when absent")
    previous_response_id: Optional[str] = Field(default=None, description="Earlier aggregate used as context")
    settings: Optional[GenerationSettings] = None


class UpdateResultRequest(BaseModel):
    """Manual correction of one provider result."""
    provider: str = Field(..., min_length=1)
    status: ResultStatus
    response_text: Optional[str] = None
    error_message: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    response_time_ms: Optional[int] = Field(default=None, ge=0)


class EditResponseRequest(BaseModel):
    """New text for a successful result."""
    response_text: str = Field(..., min_length=1)


class SelectRequest(BaseModel):
    """Preferred provider."""
    provider: str = Field(..., min_length=1)


class AggregateResponse(BaseModel):
    """Single aggregate envelope."""
    message: str
    aggregate: ResponseAggregate


class AggregateListResponse(BaseModel):
    """One page of aggregates."""
    items: list[ResponseAggregate]
    count: int
    page: int
    total_pages: int


class ProviderListResponse(BaseModel):
    """Provider status list."""
    providers: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    enabled_providers: list[str]
    test_mode: bool
    aggregate_count: int
    pending_calls: int


# Global instances
_settings: Optional[Settings] = None
_auth_middleware: Optional[AuthMiddleware] = None
_orchestrator: Optional[ResponseOrchestrator] = None


def build_orchestrator(settings: Settings) -> ResponseOrchestrator:
    """Wire registry, caller and stores from settings."""
    provider_settings = settings.providers
    registry = ProviderRegistry.from_settings(provider_settings, test_mode=settings.test_mode)
    store = AggregateStore()

    caller = ProviderCaller(
        registry=registry,
        gateway_url=provider_settings.gateway_url,
        timeout=provider_settings.timeout_seconds,
        site_url=provider_settings.site_url,
        site_title=provider_settings.site_title,
        history_lookup=store.get,
        mock_delay_ms=(provider_settings.mock_min_delay_ms, provider_settings.mock_max_delay_ms),
    )

    return ResponseOrchestrator(
        registry=registry,
        caller=caller,
        store=store,
        projects=ProjectStore(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _auth_middleware, _orchestrator

    _settings = get_settings()
    setup_logging(_settings.effective_log_level, json_output=_settings.environment == "production")

    logger.info("Starting response gateway", environment=_settings.environment)

    _auth_middleware = AuthMiddleware(AuthConfig(
        secret_key=_settings.server.secret_key,
        token_expire_minutes=_settings.server.token_expire_minutes,
        trusted_clients=_settings.server.trusted_clients,
        require_auth=_settings.server.require_auth,
        default_owner_id=_settings.server.default_owner_id,
    ))
    _orchestrator = build_orchestrator(_settings)

    logger.info(
        "Response gateway started",
        providers=[p.key for p in _orchestrator.registry.list_enabled()],
        test_mode=_settings.test_mode
    )

    yield

    logger.info("Shutting down response gateway", pending_calls=_orchestrator.pending_tasks)

    # Let in-flight provider calls record their results
    await _orchestrator.wait_for_pending(timeout=_settings.providers.timeout_seconds)
    await _orchestrator.caller.close()


# Create FastAPI app
app = FastAPI(
    title="Multi-Model Response Gateway",
    description="Fans prompts out to several LLM providers and aggregates their responses",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id to every log line emitted while serving the request."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    clear_context()
    bind_context(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        clear_context()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    logger.info("Request rejected", error=str(exc), status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(ProviderCallerError)
async def provider_error_handler(request: Request, exc: ProviderCallerError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0].get("msg", "Validation error") if errors else "Validation error"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": first, "errors": jsonable_errors(errors)}
    )


def jsonable_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep only the serializable parts of pydantic errors."""
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in errors
    ]


def get_orchestrator() -> ResponseOrchestrator:
    """Dependency returning the initialized orchestrator."""
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )
    return _orchestrator


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> UserContext:
    """Dependency to get current authenticated user."""
    if _auth_middleware is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server not initialized"
        )
    return _auth_middleware.authenticate(credentials)


def unexpected_error(action: str, error: Exception) -> HTTPException:
    """500 carrying the triggering message."""
    logger.error(f"Failed to {action}", error=str(error), exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {error}"
    )


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(orchestrator: ResponseOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    enabled = [p.key for p in orchestrator.registry.list_enabled()]
    return HealthResponse(
        status="healthy" if enabled else "degraded",
        enabled_providers=enabled,
        test_mode=orchestrator.registry.test_mode,
        aggregate_count=orchestrator.store.count(),
        pending_calls=orchestrator.pending_tasks,
    )


router = APIRouter(prefix="/api/v1/ai", tags=["AI"])


@router.post("/generate", response_model=AggregateResponse, status_code=status.HTTP_201_CREATED)
async def generate(
    payload: GenerateRequest,
    request: Request,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """
    Submit a prompt to every requested provider.

    Returns immediately with all providers pending; poll the aggregate
    to follow progress.
    """
    try:
        aggregate = await orchestrator.submit(
            prompt=payload.prompt,
            owner_id=user.user_id,
            project_id=payload.project_id,
            settings=payload.settings,
            previous_response_id=payload.previous_response_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("generate AI responses", e)

    return AggregateResponse(message="AI response generation initiated", aggregate=aggregate)


@router.get("", response_model=AggregateListResponse)
async def list_responses(
    status_filter: Optional[OverallStatus] = Query(default=None, alias="status"),
    provider: Optional[str] = None,
    project_id: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Literal["created_at", "updated_at", "duration_ms", "total_tokens_used"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """List the caller's aggregates."""
    try:
        result = await orchestrator.list_responses(
            user.user_id,
            project_id=project_id,
            status=status_filter,
            provider_key=provider,
            search=search.strip() if search else None,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("retrieve AI responses", e)

    return AggregateListResponse(**result)


@router.get("/stats", response_model=StatsSummary)
async def get_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    provider: Optional[str] = None,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Usage statistics for the caller."""
    try:
        return await orchestrator.get_stats(
            user.user_id,
            start=start_date,
            end=end_date,
            provider_key=provider,
        )
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("retrieve AI statistics", e)


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Catalog with enabled/configured flags."""
    return ProviderListResponse(providers=orchestrator.provider_status())


@router.get("/{aggregate_id}", response_model=AggregateResponse)
async def get_response(
    aggregate_id: str,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Poll one aggregate."""
    try:
        aggregate = await orchestrator.get(aggregate_id, user.user_id)
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("retrieve AI response", e)

    return AggregateResponse(message="AI response retrieved successfully", aggregate=aggregate)


@router.put("/{aggregate_id}/model", response_model=AggregateResponse)
async def update_result(
    aggregate_id: str,
    payload: UpdateResultRequest,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Manually correct one provider result."""
    try:
        aggregate = await orchestrator.update_result(
            aggregate_id,
            user.user_id,
            payload.provider,
            status=payload.status,
            response_text=payload.response_text,
            error_message=payload.error_message,
            token_usage=payload.token_usage,
            response_time_ms=payload.response_time_ms,
        )
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("update model response", e)

    return AggregateResponse(message="Model response updated successfully", aggregate=aggregate)


@router.delete("/{aggregate_id}")
async def delete_response(
    aggregate_id: str,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Delete an aggregate; outstanding provider calls are not cancelled."""
    try:
        await orchestrator.delete(aggregate_id, user.user_id)
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("delete AI response", e)

    return {"status": "deleted", "id": aggregate_id}


@router.post("/{aggregate_id}/retry", response_model=AggregateResponse)
async def retry_failed(
    aggregate_id: str,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Re-run every failed provider and wait for them."""
    try:
        aggregate = await orchestrator.retry_failed(aggregate_id, user.user_id)
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("retry responses", e)

    return AggregateResponse(message="Failed responses retried successfully", aggregate=aggregate)


@router.post("/{aggregate_id}/select", response_model=AggregateResponse)
async def select_preferred(
    aggregate_id: str,
    payload: SelectRequest,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Keep one successful response and drop the others."""
    try:
        aggregate = await orchestrator.select_preferred(aggregate_id, user.user_id, payload.provider)
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("select preferred response", e)

    return AggregateResponse(message="Preferred response selected", aggregate=aggregate)


@router.delete("/{aggregate_id}/select", response_model=AggregateResponse)
async def clear_selection(
    aggregate_id: str,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Clear the selection. Dropped responses are not restored."""
    try:
        aggregate = await orchestrator.clear_selection(aggregate_id, user.user_id)
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("clear selection", e)

    return AggregateResponse(message="Selection cleared successfully", aggregate=aggregate)


@router.post("/{aggregate_id}/model/{provider}/retry", response_model=AggregateResponse)
async def retry_provider(
    aggregate_id: str,
    provider: str,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Regenerate one provider in the background."""
    try:
        aggregate = await orchestrator.retry_provider(aggregate_id, user.user_id, provider)
    except (OrchestratorError, ProviderCallerError):
        raise
    except Exception as e:
        raise unexpected_error("retry model response", e)

    return AggregateResponse(message="Model response retry initiated", aggregate=aggregate)


@router.put("/{aggregate_id}/model/{provider}", response_model=AggregateResponse)
async def edit_response(
    aggregate_id: str,
    provider: str,
    payload: EditResponseRequest,
    user: UserContext = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """Replace the text of a successful response."""
    try:
        aggregate = await orchestrator.edit_response(
            aggregate_id, user.user_id, provider, payload.response_text
        )
    except OrchestratorError:
        raise
    except Exception as e:
        raise unexpected_error("update model response", e)

    return AggregateResponse(message="Model response updated successfully", aggregate=aggregate)


app.include_router(router)


def main():
    """Run the gateway server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.debug,
        log_level=settings.effective_log_level.lower()
    )


if __name__ == "__main__":
    main()
