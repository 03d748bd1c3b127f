"""
Gate service: login with lockout, cache and rate limit introspection.
"""

import inspect
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerState
from shared.clock import Clock
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, RateLimitError, ValidationError
from shared.logging import set_client_context

from .context import GateContext
from .ratelimit.fixed_window import GENERAL_POLICY, STRICT_POLICY, client_identity
from .storage.base import StorageBackend

CredentialVerifier = Callable[[str, str], Union[bool, Awaitable[bool]]]
TokenIssuer = Callable[[str], Union[str, Awaitable[str]]]


class LoginRequest(BaseModel):
    username: str
    password: str


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _reject_all(username: str, password: str) -> bool:
    return False


def _opaque_token(account_key: str) -> str:
    return uuid.uuid4().hex


class GateService(BaseService):
    """Gate service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 *,
                 verifier: Optional[CredentialVerifier] = None,
                 token_issuer: Optional[TokenIssuer] = None,
                 distributed: Optional[StorageBackend] = None,
                 clock: Optional[Clock] = None):
        super().__init__("gate", 8000, config)
        self.context = GateContext.build(
            self.config,
            clock=clock,
            metrics=self.metrics,
            distributed=distributed,
        )
        if verifier is None:
            self.logger.warning("No credential verifier configured, every login will be rejected")
        self.verifier = verifier or _reject_all
        self.token_issuer = token_issuer or _opaque_token

        self._setup_gate_routes()

        # Gated routes find their components here
        self.app.state.gate_context = self.context
        self.app.state.gate_service = self

    async def startup(self) -> None:
        await self.context.startup()

    async def shutdown(self) -> None:
        await self.context.close()

    async def _check_dependencies(self) -> Dict[str, Any]:
        store = self.context.store
        dependencies: Dict[str, Any] = {"local": "ok"}

        if store.distributed is None:
            dependencies["distributed"] = "disabled"
        elif store.health.state == CircuitBreakerState.OPEN:
            dependencies["distributed"] = "circuit_open"
        else:
            dependencies["distributed"] = "ok" if await store.ping() else "unreachable"
        return dependencies

    def _setup_gate_routes(self):
        """Set up gate routes."""

        @self.app.post("/api/v1/auth/login")
        async def login(body: LoginRequest, request: Request):
            """Exchange credentials for a token, subject to throttle and lockout."""
            ctx = self.context
            client_key = client_identity(request)
            account_key = body.username.strip().lower()
            if not account_key:
                raise ValidationError("Username is required", {"field": "username"})
            set_client_context(client_id=client_key, account=account_key)

            throttle_decision = await ctx.throttle.allow(client_key, ctx.throttle.policy(STRICT_POLICY))
            if not throttle_decision.allowed:
                raise RateLimitError(throttle_decision.retry_after, details={"policy": STRICT_POLICY})

            await ctx.lockout.check(account_key)

            if not await _resolve(self.verifier(body.username, body.password)):
                result = await ctx.lockout.record_failure(account_key)
                self.logger.info(
                    "Login failed",
                    failed_attempts=result.state.failed_attempts if result else None,
                    locked=bool(result and result.locked_now),
                )
                raise AuthenticationError()

            result = await ctx.lockout.record_success(account_key)
            if result is not None and not result.accepted:
                # Locked by a concurrent failure after our check
                raise AuthenticationError()

            token = await _resolve(self.token_issuer(account_key))
            self.logger.info("Login succeeded")
            return JSONResponse(
                content={"access_token": token, "token_type": "Bearer"},
                headers=throttle_decision.headers(),
            )

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats():
            """Cache counters and per-tier store state."""
            return await self.context.cache.get_stats()

        @self.app.delete("/api/v1/cache/{key}")
        async def invalidate_cache(key: str):
            """Drop one cached response from both tiers."""
            deleted = await self.context.cache.invalidate(key)
            self.logger.info("Cache entry invalidated", key=key, deleted=deleted)
            return {"key": key, "deleted": deleted}

        @self.app.get("/api/v1/ratelimit/status")
        async def rate_limit_status(request: Request, policy: str = Query(GENERAL_POLICY)):
            """Remaining budget for the calling client."""
            throttle = self.context.throttle
            try:
                throttle_policy = throttle.policy(policy)
            except ValueError as exc:
                raise ValidationError(str(exc), {"field": "policy"})

            client_key = client_identity(request)
            decision = await throttle.status(client_key, throttle_policy)
            return {
                "client_id": client_key,
                "policy": decision.policy,
                "limit": decision.limit,
                "count": decision.count,
                "remaining": decision.remaining,
                "reset_in_seconds": decision.reset_in_seconds,
            }


def create_app():
    """Create FastAPI application."""
    service = GateService()
    return service.app


if __name__ == "__main__":
    service = GateService()
    service.run()
