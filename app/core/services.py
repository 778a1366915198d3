"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- FailureKind: Classification of failures used to decide retry behaviour
- BaseService: Base class with common service utilities

Service Layer Philosophy:
    Services encapsulate business logic separate from views and models.
    Views and webhook dispatch handle transport concerns, models handle
    data, services handle logic.

Pattern Comparison:
    - ServiceResult: Use for expected failures (validation, business rules,
      missing entities, illegal transitions)
    - Exceptions: Use for unexpected failures (database errors, bugs)

Usage:
    from core.services import BaseService, FailureKind, ServiceResult

    class OrderService(BaseService):
        @classmethod
        def cancel(cls, order_id) -> ServiceResult[Order]:
            order = Order.objects.filter(id=order_id).first()
            if order is None:
                return ServiceResult.failure(
                    "Order not found",
                    error_code="ORDER_NOT_FOUND",
                    kind=FailureKind.NOT_FOUND,
                )
            ...
            return ServiceResult.success(order)

Related:
    - core.exceptions: the exception taxonomy that maps onto FailureKind
"""

from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

from core.exceptions import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    TransientError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Generator

# Generic type for ServiceResult data
T = TypeVar("T")


class FailureKind(str, enum.Enum):
    """
    Classification of an expected failure.

    The kind decides what a caller at a transport boundary does with the
    failure: VALIDATION, NOT_FOUND and CONFLICT are final and are
    acknowledged; TRANSIENT is worth retrying later.
    """

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"

    @property
    def is_retryable(self) -> bool:
        return self is FailureKind.TRANSIENT


def failure_kind_for(exc: Exception) -> FailureKind:
    """
    Map an exception onto a FailureKind.

    Application errors map by class; anything else (including
    ExternalServiceError subclasses flagged as retryable) is treated as
    transient so it is never silently acknowledged.
    """
    if isinstance(exc, ValidationError):
        return FailureKind.VALIDATION
    if isinstance(exc, NotFoundError):
        return FailureKind.NOT_FOUND
    if isinstance(exc, ConflictError):
        return FailureKind.CONFLICT
    if isinstance(exc, TransientError):
        return FailureKind.TRANSIENT
    if isinstance(exc, ExternalServiceError) and not getattr(exc, "is_retryable", True):
        return FailureKind.VALIDATION
    return FailureKind.TRANSIENT


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Provides consistent success/failure handling without exceptions
    crossing component boundaries.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code
        errors: Field-level errors for validation failures
        failure_kind: Classification of the failure (None if successful)

    Usage:
        # Success case
        return ServiceResult.success(order)

        # Failure case
        return ServiceResult.failure(
            "Order not found", "ORDER_NOT_FOUND", kind=FailureKind.NOT_FOUND
        )

        # From a caught application exception
        except ConflictError as e:
            return ServiceResult.from_exception(e)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)
    failure_kind: FailureKind | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        kind: FailureKind = FailureKind.VALIDATION,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code
            errors: Field-level errors (for validation failures)
            kind: Failure classification (defaults to VALIDATION)

        Returns:
            ServiceResult with success=False and error details
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
            failure_kind=kind,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        The failure kind is derived from the exception class and the error
        code from the exception's own code when it carries one.

        Args:
            exc: The caught exception
            error_code: Optional override for the error code

        Returns:
            ServiceResult with error details from exception
        """
        message = getattr(exc, "message", None) or str(exc)
        code = error_code or getattr(exc, "error_code", None) or exc.__class__.__name__.upper()
        errors = None
        details = getattr(exc, "details", None)
        if details:
            errors = {key: [str(value)] for key, value in details.items()}
        return cls(
            success=False,
            error=message,
            error_code=code,
            errors=errors,
            failure_kind=failure_kind_for(exc),
        )

    @property
    def is_retryable(self) -> bool:
        """Whether the failure is worth retrying (never true on success)."""
        return not self.success and self.failure_kind is FailureKind.TRANSIENT

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management

    Design Notes:
        - Use @classmethod (no instance state)
        - Use ServiceResult for expected failures
        - Raise exceptions for unexpected failures
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around Django's transaction.atomic() that makes the
        transaction boundary explicit in service code.

        Example:
            with cls.atomic():
                order = Order.objects.select_for_update().get(id=order_id)
                order.complete()
                order.save()
        """
        with transaction.atomic():
            yield
