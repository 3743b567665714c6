"""
API Module - Authoring console interface.

Exposes the engine via a stateless REST API. The console:
1. Evaluates conditions, text templates and blocks against a snapshot
2. Previews effect lists and the changes they would make
3. Renders storylets
4. Validates equipment changes
5. Scans content for dynamically created qualities

Every request carries its own state snapshot. Nothing is persisted.
"""

from .schemas import (
    # Requests
    EvaluateRequest,
    ApplyEffectsRequest,
    RenderRequest,
    EquipRequest,
    ScanRequest,
    ValidateRequest,
    # Responses
    EvaluateResponse,
    ApplyEffectsResponse,
    RenderResponse,
    EquipResponse,
    ScanResponse,
    ValidateResponse,
    ErrorResponse,
    HealthResponse,
    # Shared
    ContentPayload,
    EngineSnapshot,
    QualityDefinitionSchema,
    QualityStateSchema,
    ChangeRecordSchema,
    DeferredMacroSchema,
    # Enums
    ErrorCode,
    EvaluationMode,
    ValidationMode,
)
from .service import ConsoleService
from .app import create_app

__all__ = [
    # Requests
    "EvaluateRequest",
    "ApplyEffectsRequest",
    "RenderRequest",
    "EquipRequest",
    "ScanRequest",
    "ValidateRequest",
    # Responses
    "EvaluateResponse",
    "ApplyEffectsResponse",
    "RenderResponse",
    "EquipResponse",
    "ScanResponse",
    "ValidateResponse",
    "ErrorResponse",
    "HealthResponse",
    # Shared
    "ContentPayload",
    "EngineSnapshot",
    "QualityDefinitionSchema",
    "QualityStateSchema",
    "ChangeRecordSchema",
    "DeferredMacroSchema",
    # Enums
    "ErrorCode",
    "EvaluationMode",
    "ValidationMode",
    # Service
    "ConsoleService",
    "create_app",
]
