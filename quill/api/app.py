"""
FastAPI Application - REST API for the authoring console.

Endpoints:
    POST   /api/v1/evaluate        Evaluate a condition, text template or block
    POST   /api/v1/effects         Apply an effect list to a snapshot
    POST   /api/v1/render          Render a content object or storylet
    POST   /api/v1/equipment       Validate an equip or unequip
    POST   /api/v1/scan-dynamic    List dynamically created quality ids
    POST   /api/v1/validate        Check that an expression parses
    GET    /api/health             Health check

Every request carries the snapshot it runs against (qualities, equipment,
world overlay, content, seed). The API is stateless and never persists.
All responses are JSON with explicit Pydantic schemas.
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from .. import __version__
from ..config import Settings
from ..logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(service=None, settings: Optional[Settings] = None):
    """
    Create the FastAPI application.

    Args:
        service: Optional ConsoleService instance (creates new if not provided)
        settings: Optional Settings (read from the environment if not provided)

    Returns:
        FastAPI application instance
    """
    try:
        from fastapi import FastAPI, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse
    except ImportError:
        raise ImportError(
            "FastAPI not installed. Install with: pip install fastapi uvicorn"
        )

    from ..engine_core.errors import ParseError
    from .service import ConsoleService
    from .schemas import (
        # Request models
        EvaluateRequest,
        ApplyEffectsRequest,
        RenderRequest,
        EquipRequest,
        ScanRequest,
        ValidateRequest,
        # Response models
        EvaluateResponse,
        ApplyEffectsResponse,
        RenderResponse,
        EquipResponse,
        ScanResponse,
        ValidateResponse,
        ErrorResponse,
        HealthResponse,
        # Enums
        ErrorCode,
    )

    settings = settings or (service.settings if service is not None else Settings.from_env())
    console_service = service or ConsoleService(settings=settings)

    @asynccontextmanager
    async def lifespan(app):
        setup_logging(settings.verbose)
        logger.info("Quill console API starting (%s)", settings.env)
        yield

    app = FastAPI(
        title="Quill Console API",
        description="""
Storylet rule-language engine - authoring console back-end.

## Snapshots

Each request posts the character qualities, equipment, world overlay and
content it should run against. Nothing is stored between requests.

## Error Codes

| Code | Description |
|------|-------------|
| `PARSE_ERROR` | Expression, template or effect list does not parse |
| `VALIDATION_ERROR` | Request body failed validation |
| `EQUIP_REJECTED` | Equip or unequip was refused |
| `INTERNAL_ERROR` | Unexpected failure |
        """,
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Error helpers
    # =========================================================================

    def make_error_response(
        error_code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ) -> JSONResponse:
        """Create a standardized error response."""
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=message,
                error_code=error_code,
                details=details,
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return make_error_response(
            ErrorCode.VALIDATION_ERROR,
            "Invalid request body",
            status_code=422,
            details={"errors": [
                {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg", "")}
                for e in exc.errors()
            ]},
        )

    # =========================================================================
    # Evaluation Endpoints
    # =========================================================================

    @app.post(
        "/api/v1/evaluate",
        response_model=EvaluateResponse,
        responses={422: {"model": ErrorResponse}},
        tags=["Evaluation"],
        summary="Evaluate a condition, text template or block",
    )
    async def evaluate(request: EvaluateRequest):
        """
        Evaluate an expression against the posted snapshot.

        Parse failures do not error: a condition that fails to parse is
        false and a template comes back raw, with the failure listed in
        `errors`.
        """
        return console_service.evaluate(request)

    @app.post(
        "/api/v1/effects",
        response_model=ApplyEffectsResponse,
        responses={422: {"model": ErrorResponse}},
        tags=["Evaluation"],
        summary="Apply an effect list",
    )
    async def apply_effects(request: ApplyEffectsRequest):
        """Apply effects in order; failed statements are skipped and listed in `errors`."""
        return console_service.apply_effects(request)

    @app.post(
        "/api/v1/render",
        response_model=RenderResponse,
        responses={422: {"model": ErrorResponse}},
        tags=["Evaluation"],
        summary="Render a content object",
    )
    async def render(request: RenderRequest):
        return console_service.render(request)

    @app.post(
        "/api/v1/validate",
        response_model=ValidateResponse,
        responses={400: {"model": ErrorResponse}},
        tags=["Evaluation"],
        summary="Check that an expression parses",
    )
    async def validate(request: ValidateRequest):
        try:
            return console_service.validate(request)
        except ParseError as e:
            return make_error_response(
                ErrorCode.PARSE_ERROR,
                e.message,
                details={"fragment": e.fragment, "position": e.position},
            )

    # =========================================================================
    # Equipment
    # =========================================================================

    @app.post(
        "/api/v1/equipment",
        response_model=EquipResponse,
        responses={409: {"model": ErrorResponse}},
        tags=["Equipment"],
        summary="Validate an equip or unequip",
    )
    async def equip(request: EquipRequest):
        """
        Equip an item, or clear the slot when `item_id` is null.

        Rejections (unknown item, not owned, wrong slot, cursed item in the
        way) return 409 with the reason and the unchanged equipment.
        """
        response = console_service.equip(request)
        if not response.success:
            return make_error_response(
                ErrorCode.EQUIP_REJECTED,
                response.message,
                status_code=409,
                details={
                    "slot": response.slot,
                    "item_id": response.item_id,
                    "locked": response.locked,
                    "equipment": response.equipment,
                },
            )
        return response

    # =========================================================================
    # Content
    # =========================================================================

    @app.post(
        "/api/v1/scan-dynamic",
        response_model=ScanResponse,
        responses={422: {"model": ErrorResponse}},
        tags=["Content"],
        summary="List dynamically created quality ids",
    )
    async def scan_dynamic(request: ScanRequest):
        return console_service.scan(request)

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get(
        "/api/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint for load balancers."""
        return HealthResponse(
            status="healthy",
            service="quill-console",
            version=__version__,
        )

    return app


# For running directly: uvicorn quill.api.app:app
app = None
try:
    app = create_app()
except ImportError:
    # FastAPI not installed
    pass
