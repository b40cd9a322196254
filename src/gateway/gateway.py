"""API key gateway for third-party automation clients.

Authenticates a request by API key, checks the requested operation
against a fixed allowlist of read-only query functions, pins the
caller's user id into the parameters and forwards the call to the
store. Results are passed through unchanged.

Per request the gateway moves through::

    unauthenticated -> authenticated -> authorized -> invoked -> succeeded | failed

with two early exits, ``unauthenticated_rejected`` (401) and
``unauthorized_rejected`` (400/403).
"""

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from src.config import Settings
from src.errors import (
    AuthenticationError,
    DownstreamError,
    InvalidRequestError,
    RpcPermissionError,
    StoreError,
)
from src.gateway.keys import extract_api_key, hash_api_key, key_lookup_prefix
from src.storage.store import PlannerStore

logger = structlog.get_logger(__name__)

ALLOWED_RPCS: tuple[str, ...] = (
    "get_todays_tasks",
    "get_due_questions",
    "get_audit_state",
    "get_changes_since",
    "get_recordings_ready",
    "get_daily_expected_state",
)

USER_ID_PARAM = "p_user_id"


class GatewayRequestState(str, Enum):
    """Lifecycle of one gateway request."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    AUTHORIZED = "authorized"
    INVOKED = "invoked"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNAUTHENTICATED_REJECTED = "unauthenticated_rejected"
    UNAUTHORIZED_REJECTED = "unauthorized_rejected"


class ApiKeyContext(BaseModel):
    """Identity resolved from a valid API key."""

    key_id: str
    user_id: str
    key_prefix: str
    is_read_only: bool = True


class GatewayResult(BaseModel):
    """Terminal state of a request plus the HTTP response to send."""

    state: GatewayRequestState
    status_code: int
    body: dict[str, Any]


class ApiKeyGateway:
    """Key-authenticated access to the read-only query functions."""

    def __init__(
        self,
        store: PlannerStore,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            store: Store holding API keys and serving the query functions.
            settings: Key prefix configuration.
            clock: Returns the current time (defaults to UTC now).
        """
        settings = settings or Settings()
        self._store = store
        self._key_prefix = settings.API_KEY_PREFIX
        self._lookup_length = settings.API_KEY_LOOKUP_PREFIX_LENGTH
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger.bind(component="api_key_gateway")

    @property
    def allowed_functions(self) -> list[str]:
        return list(ALLOWED_RPCS)

    async def authenticate(self, header_value: str | None) -> ApiKeyContext:
        """Resolve an API key header to a caller identity.

        Args:
            header_value: ``Bearer <key>`` or the bare key.

        Returns:
            Context of the authenticated key.

        Raises:
            AuthenticationError: Missing, malformed, unknown, inactive or expired key.
        """
        raw_key = extract_api_key(header_value)
        if raw_key is None:
            raise self._reject("missing_key")
        if not raw_key.startswith(self._key_prefix):
            raise self._reject("malformed_key")

        key_prefix = key_lookup_prefix(raw_key, self._lookup_length)
        record = await self._store.find_api_key(hash_api_key(raw_key), key_prefix)

        if record is None:
            raise self._reject("unknown_key", key_prefix=key_prefix)
        if not record.is_active:
            raise self._reject("inactive_key", key_prefix=key_prefix)

        now = self._clock()
        if record.is_expired(now):
            raise self._reject("expired_key", key_prefix=key_prefix)

        try:
            await self._store.touch_api_key(record.id, now)
        except Exception as e:
            self._logger.warning("api_key_touch_failed", key_id=record.id, error=str(e))

        self._logger.debug("api_key_authenticated", key_id=record.id, user_id=record.user_id)

        return ApiKeyContext(
            key_id=record.id,
            user_id=record.user_id,
            key_prefix=record.key_prefix,
            is_read_only=record.is_read_only,
        )

    def authorize(self, rpc_name: Any) -> str:
        """Check an operation name against the allowlist.

        Raises:
            InvalidRequestError: If no name was given.
            RpcPermissionError: If the name is not allowlisted.
        """
        if not rpc_name:
            raise InvalidRequestError("Missing rpc_name in request body")
        if not isinstance(rpc_name, str) or rpc_name not in ALLOWED_RPCS:
            self._logger.warning("rpc_not_allowed", rpc_name=str(rpc_name))
            raise RpcPermissionError(str(rpc_name), self.allowed_functions)
        return rpc_name

    async def invoke(
        self,
        rpc_name: Any,
        params: dict[str, Any] | None,
        ctx: ApiKeyContext,
    ) -> Any:
        """Run an allowlisted query function for the authenticated user.

        ``p_user_id`` always comes from the key, never from the caller.

        Args:
            rpc_name: Requested function.
            params: Caller-supplied arguments.
            ctx: Authenticated caller.

        Returns:
            The function's JSON result, unmodified.

        Raises:
            InvalidRequestError: Missing name or non-object params.
            RpcPermissionError: Name outside the allowlist.
            DownstreamError: The function failed. Not retried.
        """
        name = self.authorize(rpc_name)
        call_params = self._build_params(params, ctx)

        try:
            result = await self._store.call_rpc(name, call_params)
        except StoreError as e:
            self._logger.error("rpc_failed", rpc_name=name, user_id=ctx.user_id, error=e.message)
            raise DownstreamError(e.message, rpc_name=name) from e

        self._logger.info("rpc_invoked", rpc_name=name, user_id=ctx.user_id)
        return result

    async def handle(self, header_value: str | None, body: Any) -> GatewayResult:
        """Process one automation request end to end.

        Args:
            header_value: API key header value.
            body: Decoded JSON body (``{rpc_name, params?}``), or None.

        Returns:
            Terminal state and response.
        """
        try:
            ctx = await self.authenticate(header_value)
        except AuthenticationError as e:
            return self._result(GatewayRequestState.UNAUTHENTICATED_REJECTED, e)
        self._transition(GatewayRequestState.AUTHENTICATED, ctx)

        payload = body if isinstance(body, dict) else {}
        try:
            name = self.authorize(payload.get("rpc_name"))
            params = self._build_params(payload.get("params"), ctx)
        except (InvalidRequestError, RpcPermissionError) as e:
            return self._result(GatewayRequestState.UNAUTHORIZED_REJECTED, e)
        self._transition(GatewayRequestState.AUTHORIZED, ctx, rpc_name=name)

        self._transition(GatewayRequestState.INVOKED, ctx, rpc_name=name)
        try:
            data = await self.invoke(name, params, ctx)
        except DownstreamError as e:
            return self._result(GatewayRequestState.FAILED, e)

        return GatewayResult(
            state=GatewayRequestState.SUCCEEDED,
            status_code=200,
            body={"data": data},
        )

    def _build_params(self, params: Any, ctx: ApiKeyContext) -> dict[str, Any]:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidRequestError("params must be a JSON object")
        return {**params, USER_ID_PARAM: ctx.user_id}

    def _transition(self, state: GatewayRequestState, ctx: ApiKeyContext, **context: Any) -> None:
        self._logger.debug("gateway_state", state=state.value, key_id=ctx.key_id, **context)

    def _reject(self, reason: str, **context: Any) -> AuthenticationError:
        self._logger.warning("api_key_rejected", reason=reason, **context)
        return AuthenticationError(reason)

    def _result(self, state: GatewayRequestState, error: Any) -> GatewayResult:
        return GatewayResult(state=state, status_code=error.status_code, body=error.to_response())
