from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .conditions import EvaluationContext
from .models import OnErrorPolicy, ServiceCall

logger = logging.getLogger(__name__)

Transport = Callable[[ServiceCall, Mapping[str, Any]], Mapping[str, Any]]

CACHE_KEY_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z0-9_.\-]+)\}")
DEFAULT_SERVICE_TIMEOUT_MS = 30_000


class ServiceTimeoutError(RuntimeError):
    """Raised when a single service attempt exceeds its timeout."""


@dataclass(slots=True)
class ServiceOutcome:
    service_id: str
    succeeded: bool
    attempts: int
    response: Mapping[str, Any] | None = None
    next_screen: str | None = None
    abort_flow: bool = False
    from_cache: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceId": self.service_id,
            "succeeded": self.succeeded,
            "attempts": self.attempts,
            "response": dict(self.response) if self.response is not None else None,
            "nextScreen": self.next_screen,
            "abortFlow": self.abort_flow,
            "fromCache": self.from_cache,
            "error": self.error,
        }


class ResponseCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Mapping[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Mapping[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def render_cache_key(call: ServiceCall, context: EvaluationContext) -> str:
    template = call.cache_policy.cache_key or call.service_id
    scope = context.as_code_scope()

    def substitute(match: re.Match[str]) -> str:
        current: Any = scope.get(match.group(1), {})
        for part in match.group(2).split("."):
            current = current.get(part) if isinstance(current, Mapping) else None
        return "" if current is None else str(current)

    return f"{call.service_id}:{CACHE_KEY_PLACEHOLDER.sub(substitute, template)}"


class ServiceInvoker:
    """Caller-side execution of a ``CALL_SERVICE`` decision.

    Each attempt is bounded by the call's timeout; failed attempts are retried
    ``retryPolicy.maxRetries`` times with a fixed delay, after which the call's
    ``onError`` policy decides whether the journey continues, diverts to an
    error screen or is aborted. Unconfigured ``onError`` behaves as FAIL_FLOW.
    """

    def __init__(
        self,
        transport: Transport,
        cache: ResponseCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 8,
    ) -> None:
        self.transport = transport
        self.cache = cache
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="service-call")

    def _attempt(self, call: ServiceCall, request: Mapping[str, Any]) -> Mapping[str, Any]:
        timeout_ms = call.timeout_ms or DEFAULT_SERVICE_TIMEOUT_MS
        future = self._executor.submit(self.transport, call, request)
        try:
            return future.result(timeout=timeout_ms / 1000)
        except FutureTimeoutError:
            future.cancel()
            raise ServiceTimeoutError(f"service {call.service_id} timed out after {timeout_ms}ms") from None

    def invoke(
        self,
        call: ServiceCall,
        context: EvaluationContext,
        target_screen: str | None = None,
        request: Mapping[str, Any] | None = None,
    ) -> ServiceOutcome:
        cache_key = None
        if self.cache is not None and call.cache_policy.enabled:
            cache_key = render_cache_key(call, context)
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("service_cache_hit", extra={"service_id": call.service_id, "cache_key": cache_key})
                return ServiceOutcome(call.service_id, True, 0, cached, next_screen=target_screen, from_cache=True)

        payload = request if request is not None else dict(context.form_data)
        attempts = 0
        last_error = ""
        while attempts <= call.retry_policy.max_retries:
            if attempts:
                self._sleep(call.retry_policy.retry_delay_ms / 1000)
            attempts += 1
            try:
                response = self._attempt(call, payload)
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "service_attempt_failed",
                    extra={"service_id": call.service_id, "attempt": attempts, "error": last_error},
                )
                continue
            if cache_key is not None:
                self.cache.put(cache_key, response, call.cache_policy.ttl_seconds)
            logger.info("service_call_succeeded", extra={"service_id": call.service_id, "attempts": attempts})
            return ServiceOutcome(call.service_id, True, attempts, response, next_screen=target_screen)

        return self._apply_on_error(call, attempts, last_error, target_screen)

    def _apply_on_error(self, call: ServiceCall, attempts: int, error: str, target_screen: str | None) -> ServiceOutcome:
        policy = call.on_error or OnErrorPolicy.FAIL_FLOW
        outcome = ServiceOutcome(call.service_id, False, attempts, error=error)
        if policy is OnErrorPolicy.CONTINUE:
            outcome.next_screen = target_screen
        elif policy is OnErrorPolicy.ROUTE_TO_SCREEN and call.error_screen:
            outcome.next_screen = call.error_screen
        else:
            outcome.abort_flow = True
        logger.warning(
            "service_call_failed",
            extra={
                "service_id": call.service_id,
                "attempts": attempts,
                "on_error": policy.value,
                "next_screen": outcome.next_screen,
                "abort_flow": outcome.abort_flow,
            },
        )
        return outcome

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
