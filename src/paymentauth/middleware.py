"""FastAPI/Starlette adapters for the payment gate.

Two ways to protect routes:
- ``PaymentAuthMiddleware`` gates every request whose path matches a
  configured prefix
- ``require_payment(gate)`` is a route dependency returning the
  ``PaymentContext``; register ``install_payment_handlers(app)`` so that
  rejections render as gate responses

On success the downstream handler finds the payment context on
``request.state.payment`` and the response carries ``Payment-Receipt``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .encoding import AUTHORIZATION_HEADER
from .exceptions import NetworkError, PaymentAuthError
from .gate import GateDecision, GateState, PaymentGate
from .logging_config import LogContext, generate_request_id
from .types import PaymentContext

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def get_request_id(request: Request) -> str:
    """Request ID from request state, the X-Request-ID header, or a fresh one."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get(REQUEST_ID_HEADER) or generate_request_id()


def render_decision(decision: GateDecision) -> JSONResponse:
    """Render a gate decision as an HTTP response."""
    return JSONResponse(content=decision.body, status_code=decision.status, headers=decision.headers)


def _infrastructure_failure(exc: Exception) -> GateDecision:
    error = NetworkError("Payment state unavailable", details={"reason": type(exc).__name__})
    return GateDecision(GateState.INFRA_ERROR, error.http_status, error.to_dict())


async def run_gate(gate: PaymentGate, request: Request) -> GateDecision:
    """Run ``gate`` for ``request``; storage failures render as 503."""
    request_id = get_request_id(request)
    request.state.request_id = request_id
    with LogContext(request_id=request_id):
        try:
            return await gate.handle(request.headers.get(AUTHORIZATION_HEADER))
        except PaymentAuthError as exc:
            logger.error("Payment gate error: %s", exc.message)
            return GateDecision(GateState.INFRA_ERROR, exc.http_status, exc.to_dict())
        except Exception as exc:
            logger.exception("Payment gate failed")
            return _infrastructure_failure(exc)


def _is_same_or_below(path: str, base: str) -> bool:
    base = base.rstrip("/")
    return path == base or path.startswith(base + "/")


@dataclass
class PaymentAuthMiddlewareConfig:
    """Configuration for the payment middleware."""

    # Paths requiring payment (prefix match)
    protected_paths: List[str] = field(default_factory=lambda: ["/"])

    # Paths never gated even when under a protected prefix. Matches the path
    # itself and anything below it, so "/health" leaves "/healthcare" gated
    excluded_paths: List[str] = field(default_factory=lambda: ["/health"])

    # HTTP methods passed through without payment
    exempt_methods: List[str] = field(default_factory=lambda: ["OPTIONS"])


class PaymentAuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware that requires an HTTP 402 payment on protected endpoints.

    Flow:
    1. Skip paths outside protected_paths, excluded paths and exempt methods
    2. Run the payment gate on the Authorization header
    3. On rejection: render the gate decision (402/401/400/500/503)
    4. On success: set request.state.payment, call the handler, attach
       Payment-Receipt and Cache-Control to its response
    """

    def __init__(
        self,
        app,
        gate: PaymentGate,
        config: Optional[PaymentAuthMiddlewareConfig] = None,
    ):
        super().__init__(app)
        self.gate = gate
        self.config = config or PaymentAuthMiddlewareConfig()
        logger.info(
            "Payment middleware initialized (protected_paths=%s, realm=%s)",
            self.config.protected_paths,
            gate.settings.realm,
        )

    def _requires_payment(self, request: Request) -> bool:
        if request.method.upper() in self.config.exempt_methods:
            return False
        path = request.url.path
        if any(_is_same_or_below(path, excluded) for excluded in self.config.excluded_paths):
            return False
        return any(path.startswith(prefix) for prefix in self.config.protected_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self._requires_payment(request):
            return await call_next(request)

        decision = await run_gate(self.gate, request)
        if not decision.authorized:
            return render_decision(decision)

        request.state.payment = decision.payment
        response = await call_next(request)
        for name, value in decision.headers.items():
            response.headers[name] = value
        return response


class PaymentDenied(Exception):
    """Raised by ``require_payment`` when the gate rejects a request."""

    def __init__(self, decision: GateDecision):
        super().__init__(decision.state.value)
        self.decision = decision


async def payment_denied_handler(request: Request, exc: PaymentDenied) -> JSONResponse:
    return render_decision(exc.decision)


def install_payment_handlers(app: FastAPI) -> None:
    """Register the handler that renders ``PaymentDenied`` rejections."""
    app.add_exception_handler(PaymentDenied, payment_denied_handler)


def require_payment(gate: PaymentGate) -> Callable:
    """Build a FastAPI dependency that gates a single route.

    Usage:
        @app.get("/premium")
        async def premium(payment: PaymentContext = Depends(require_payment(gate))):
            ...
    """

    async def dependency(request: Request, response: Response) -> PaymentContext:
        decision = await run_gate(gate, request)
        if not decision.authorized:
            raise PaymentDenied(decision)
        request.state.payment = decision.payment
        for name, value in decision.headers.items():
            response.headers[name] = value
        assert decision.payment is not None
        return decision.payment

    return dependency


__all__ = [
    "REQUEST_ID_HEADER",
    "PaymentAuthMiddlewareConfig",
    "PaymentAuthMiddleware",
    "PaymentDenied",
    "get_request_id",
    "install_payment_handlers",
    "payment_denied_handler",
    "render_decision",
    "require_payment",
    "run_gate",
]
