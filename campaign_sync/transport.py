"""
Resilient Transport - Deadline, Retry and Rate-Limit Aware HTTP Calls

Every call to the ad platform (token exchange, campaign listing, campaign
sync) goes through ResilientTransport.execute(), which owns the backoff math.

Retry rules:
- 401: invalidate the cached token and repeat once with a fresh one; a second
  401 raises AuthError
- 429: wait for the server's Retry-After hint (plus a safety margin) and
  retry; these waits have their own, larger budget
- 5xx, timeouts, network errors: exponential backoff with jitter, bounded by
  the failure budget
- other 4xx: fail immediately

Usage:
    transport = ResilientTransport(client, RetryPolicy.from_settings(settings), token_provider=tokens)
    response = await transport.execute(
        RequestSpec("GET", "/api/campaigns", timeout=15, params={"page": 1, "limit": 10})
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from campaign_sync.errors import (
    AuthError,
    ResponseFormatError,
    TransportError,
    TransportErrorKind,
)
from campaign_sync.utils.config import Settings

if TYPE_CHECKING:
    from campaign_sync.token_provider import TokenProvider

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class RequestSpec:
    """One logical HTTP call and its deadline (seconds)."""

    method: str
    url: str
    timeout: float
    params: Optional[dict[str, Any]] = None
    json: Optional[Any] = None
    headers: dict[str, str] = field(default_factory=dict)
    authenticated: bool = True

    @property
    def label(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    rate_limit_max_retries: int = 10
    rate_limit_default_wait: float = 60.0
    rate_limit_safety_margin: float = 0.25

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            rate_limit_max_retries=settings.RATE_LIMIT_MAX_RETRIES,
            rate_limit_default_wait=settings.RATE_LIMIT_DEFAULT_WAIT,
            rate_limit_safety_margin=settings.RATE_LIMIT_SAFETY_MARGIN,
        )

    def backoff(self, retry_number: int) -> float:
        """Delay before the retry_number-th retry (0-based), jittered and capped."""
        delay = self.base_delay * (2 ** retry_number) + random.uniform(0, self.base_delay)
        return min(delay, self.max_delay)


class _Throttled(Exception):
    """A 429 answer; never escapes execute()."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limited, retry after {retry_after:.2f}s")
        self.retry_after = retry_after


@dataclass
class _Budget:
    failures: int = 0
    throttles: int = 0


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, _Throttled):
        return True
    return isinstance(exc, TransportError) and exc.retryable and not exc.exhausted


class ResilientTransport:
    """Wraps an httpx.AsyncClient with the retry, rate-limit and auth rules above."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy,
        token_provider: Optional["TokenProvider"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.policy = policy
        self.token_provider = token_provider
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)

    async def execute(self, spec: RequestSpec) -> httpx.Response:
        """Run the request until it succeeds or its budgets are spent.

        Returns:
            The 2xx response

        Raises:
            AuthError: If credentials are rejected
            TransportError: If the call failed for good
        """
        budget = _Budget()
        retrying = AsyncRetrying(
            retry=retry_if_exception(_should_retry),
            stop=self._stop_condition(budget),
            wait=self._wait_strategy(budget),
            sleep=self._sleep,
            before_sleep=self._log_retry(spec, budget),
            reraise=True,
        )
        try:
            return await retrying(self._attempt, spec, budget)
        except _Throttled as e:
            raise TransportError(
                TransportErrorKind.RATE_LIMIT_EXHAUSTED,
                f"{spec.label} still rate limited after {budget.throttles} waits",
                status=429,
            ) from e
        except TransportError as e:
            e.exhausted = True
            self._logger.warning(
                "Request failed",
                extra={
                    "endpoint": spec.label,
                    "kind": e.kind,
                    "status": e.status,
                    "failures": budget.failures,
                    "rate_limited": budget.throttles,
                },
            )
            raise

    async def execute_model(self, spec: RequestSpec, model: Type[ModelT]) -> ModelT:
        """execute() and validate the JSON body into a pydantic model."""
        response = await self.execute(spec)
        try:
            return model.model_validate(response.json())
        except (ValidationError, ValueError) as e:
            raise ResponseFormatError(f"{spec.label} returned an unexpected body: {e}") from e

    async def _attempt(self, spec: RequestSpec, budget: _Budget) -> httpx.Response:
        try:
            return await self._attempt_once(spec)
        except _Throttled:
            budget.throttles += 1
            raise
        except TransportError as e:
            if _should_retry(e):
                budget.failures += 1
            raise

    async def _attempt_once(self, spec: RequestSpec) -> httpx.Response:
        reauthenticated = False
        while True:
            headers = dict(spec.headers)
            credential = None
            if spec.authenticated and self.token_provider is not None:
                credential = await self.token_provider.get_token()
                headers["Authorization"] = credential.authorization

            response = await self._send(spec, headers)
            status = response.status_code

            if status == 401:
                if credential is None:
                    raise AuthError(f"{spec.label} rejected the supplied credentials")
                if reauthenticated:
                    raise AuthError(f"{spec.label} still unauthorized after token refresh")
                self._logger.info("Unauthorized, refreshing token", extra={"endpoint": spec.label})
                self.token_provider.invalidate(credential)
                reauthenticated = True
                continue

            if status == 429:
                raise _Throttled(self._retry_after(response))

            if status >= 500:
                raise TransportError(
                    TransportErrorKind.SERVER_ERROR,
                    f"{spec.label} returned {status}",
                    status=status,
                )

            if status >= 400:
                raise TransportError(
                    TransportErrorKind.CLIENT_ERROR,
                    f"{spec.label} returned {status}: {response.text[:200]}",
                    status=status,
                )

            return response

    async def _send(self, spec: RequestSpec, headers: dict[str, str]) -> httpx.Response:
        request = self.client.request(
            spec.method,
            spec.url,
            params=spec.params,
            json=spec.json,
            headers=headers,
            timeout=spec.timeout,
        )
        try:
            return await asyncio.wait_for(request, timeout=spec.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(
                TransportErrorKind.TIMEOUT,
                f"{spec.label} timed out after {spec.timeout}s",
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                TransportErrorKind.NETWORK_ERROR,
                f"{spec.label} failed: {e.__class__.__name__}: {e}",
            ) from e

    def _retry_after(self, response: httpx.Response) -> float:
        """Seconds the server asked us to wait; conservative default if it didn't say."""
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                pass
            try:
                when = parsedate_to_datetime(header)
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
            except (TypeError, ValueError):
                pass

        try:
            hint = response.json().get("retry_after")
            if hint is not None:
                return max(0.0, float(hint))
        except (ValueError, AttributeError, TypeError):
            pass

        return self.policy.rate_limit_default_wait

    def _stop_condition(self, budget: _Budget) -> Callable[[RetryCallState], bool]:
        policy = self.policy

        def stop(retry_state: RetryCallState) -> bool:
            if isinstance(retry_state.outcome.exception(), _Throttled):
                return budget.throttles > policy.rate_limit_max_retries
            return budget.failures > policy.max_retries

        return stop

    def _wait_strategy(self, budget: _Budget) -> Callable[[RetryCallState], float]:
        policy = self.policy

        def wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception()
            if isinstance(exc, _Throttled):
                return exc.retry_after + policy.rate_limit_safety_margin
            return policy.backoff(max(budget.failures - 1, 0))

        return wait

    def _log_retry(self, spec: RequestSpec, budget: _Budget) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else None
            if isinstance(exc, _Throttled):
                self._logger.warning(
                    "Rate limited, waiting",
                    extra={"endpoint": spec.label, "wait_seconds": delay, "rate_limited": budget.throttles},
                )
            else:
                self._logger.warning(
                    "Retrying request",
                    extra={
                        "endpoint": spec.label,
                        "error": str(exc),
                        "retry": budget.failures,
                        "max_retries": self.policy.max_retries,
                        "delay_seconds": delay,
                    },
                )

        return before_sleep
