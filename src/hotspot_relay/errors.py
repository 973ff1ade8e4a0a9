"""Error taxonomy shared by the event path, the job runner and the HTTP API."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base error carrying a machine-readable code and an HTTP-equivalent status."""

    code = "internal_error"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.meta = meta or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class ValidationFailure(RelayError):
    code = "validation"
    status = 400


class UnknownRouterError(ValidationFailure):
    def __init__(self, router_id: str) -> None:
        super().__init__(f"unknown router: {router_id}", meta={"routerId": router_id})
        self.router_id = router_id


class ActionNotAllowedError(RelayError):
    code = "action_not_allowed"
    status = 403


class CircuitOpenError(RelayError):
    code = "circuit_open"
    status = 503


class DriverError(RelayError):
    """A router or overlay command failed."""

    code = "driver_error"
    status = 502


class StoreUnavailableError(RelayError):
    code = "store_unavailable"
    status = 503


class NotFoundError(RelayError):
    code = "not_found"
    status = 404


class ConfigurationError(RelayError):
    """Raised at startup when the process must not run."""

    code = "configuration"
    status = 500
