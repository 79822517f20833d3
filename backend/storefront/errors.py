# Overview: Error taxonomy shared by services and the HTTP layer.

from __future__ import annotations

from flask import jsonify


class StorefrontError(Exception):
    """Base class for caller-facing errors. Carries structured details."""
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(StorefrontError, ValueError):
    """400-level input problem."""
    status_code = 400


class NotFoundError(StorefrontError, LookupError):
    """404-level: referenced record does not exist."""
    status_code = 404


class ConflictError(StorefrontError, ValueError):
    """409-level business rule conflict (duplicate code, overlapping deal, terminal order)."""
    status_code = 409


class InsufficientStockError(StorefrontError):
    """Requested quantity exceeds what the inventory row can give."""
    status_code = 409


class PermissionDeniedError(StorefrontError):
    status_code = 403


class TransactionTimeoutError(StorefrontError):
    """Transaction ran past its deadline. Nothing was committed; safe to retry."""
    status_code = 503


def error_response(exc: StorefrontError):
    return jsonify(exc.to_dict()), exc.status_code
