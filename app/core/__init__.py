"""
Core Application - Infrastructure & Base Classes

Generic, reusable base classes shared by the domain apps. No billing
logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - VersionedMixin: Optimistic locking version counter

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling
    - FailureKind: Failure classification (validation/not found/conflict/transient)

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - ValidationError, NotFoundError, ConflictError
    - TransientError, PolicyExhaustedError, ExternalServiceError

Note:
    Django models and model mixins are NOT imported here to avoid
    AppRegistryNotReady errors. Import them directly from their modules.
"""

# Exceptions (no Django dependencies)
from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PolicyExhaustedError,
    TransientError,
    ValidationError,
)

# Services (no Django model dependencies)
from .services import BaseService, FailureKind, ServiceResult

__all__ = [
    # Services
    "BaseService",
    "FailureKind",
    "ServiceResult",
    # Exceptions
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "TransientError",
    "PolicyExhaustedError",
    "ExternalServiceError",
]
