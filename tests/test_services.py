import time

import pytest

from journey_configurator.conditions import EvaluationContext
from journey_configurator.models import ServiceCall
from journey_configurator.services import ResponseCache, ServiceInvoker, render_cache_key


class FlakyTransport:
    def __init__(self, failures: int, response: dict | None = None) -> None:
        self.failures = failures
        self.response = response or {"score": 742}
        self.calls = 0

    def __call__(self, call, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("bureau unavailable")
        return self.response


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def service(**overrides) -> ServiceCall:
    document = {
        "serviceId": "bureau",
        "endpoint": "/bureau/pull",
        "timeout": 2000,
        "retryPolicy": {"maxRetries": 2, "retryDelayMs": 250},
        "onError": "FAIL_FLOW",
    }
    document.update(overrides)
    return ServiceCall.from_dict(document)


@pytest.fixture
def delays():
    return []


def invoker(transport, delays, cache=None) -> ServiceInvoker:
    return ServiceInvoker(transport, cache=cache, sleep=delays.append)


CONTEXT = EvaluationContext(form_data={"pan": "ABCDE1234F"})


def test_retries_with_fixed_delay_until_success(delays) -> None:
    transport = FlakyTransport(failures=2)
    outcome = invoker(transport, delays).invoke(service(), CONTEXT, target_screen="offer")
    assert outcome.succeeded is True
    assert outcome.attempts == 3
    assert outcome.next_screen == "offer"
    assert outcome.response == {"score": 742}
    assert delays == [0.25, 0.25]


def test_fail_flow_aborts_after_retries_exhausted(delays) -> None:
    transport = FlakyTransport(failures=10)
    outcome = invoker(transport, delays).invoke(service(), CONTEXT, target_screen="offer")
    assert outcome.succeeded is False
    assert outcome.abort_flow is True
    assert outcome.next_screen is None
    assert transport.calls == 3
    assert "bureau unavailable" in outcome.error


def test_continue_policy_proceeds_to_target(delays) -> None:
    outcome = invoker(FlakyTransport(failures=10), delays).invoke(
        service(onError="CONTINUE", retryPolicy={"maxRetries": 0}), CONTEXT, target_screen="offer"
    )
    assert outcome.abort_flow is False
    assert outcome.next_screen == "offer"
    assert outcome.attempts == 1
    assert delays == []


def test_route_to_screen_policy_diverts_to_error_screen(delays) -> None:
    call = service(onError="ROUTE_TO_SCREEN", errorScreen="bureau_down", retryPolicy={"maxRetries": 1})
    outcome = invoker(FlakyTransport(failures=10), delays).invoke(call, CONTEXT, target_screen="offer")
    assert outcome.next_screen == "bureau_down"
    assert outcome.abort_flow is False


def test_attempt_timeout_counts_as_failure(delays) -> None:
    def slow_transport(call, request):
        time.sleep(0.5)
        return {"score": 1}

    call = service(timeout=50, retryPolicy={"maxRetries": 0}, onError="CONTINUE")
    outcome = invoker(slow_transport, delays).invoke(call, CONTEXT, target_screen="offer")
    assert outcome.succeeded is False
    assert "timed out" in outcome.error


def test_cached_response_is_reused_within_ttl(delays) -> None:
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    transport = FlakyTransport(failures=0)
    call = service(cachePolicy={"enabled": True, "ttlSeconds": 60, "cacheKey": "pan-{formData.pan}"})
    service_invoker = invoker(transport, delays, cache)

    first = service_invoker.invoke(call, CONTEXT)
    second = service_invoker.invoke(call, CONTEXT)
    assert first.from_cache is False
    assert second.from_cache is True
    assert transport.calls == 1

    clock.now += 61
    third = service_invoker.invoke(call, CONTEXT)
    assert third.from_cache is False
    assert transport.calls == 2


def test_render_cache_key_resolves_context_placeholders() -> None:
    call = service(cachePolicy={"enabled": True, "ttlSeconds": 60, "cacheKey": "{formData.pan}:{userProfile.id}"})
    context = EvaluationContext(form_data={"pan": "ABCDE1234F"}, user_profile={"id": 42})
    assert render_cache_key(call, context) == "bureau:ABCDE1234F:42"


def test_string_false_disables_response_cache(delays) -> None:
    transport = FlakyTransport(failures=0)
    call = service(cachePolicy={"enabled": "false", "ttlSeconds": 60, "cacheKey": "{formData.pan}"})
    assert call.cache_policy.enabled is False
    service_invoker = invoker(transport, delays, ResponseCache(clock=FakeClock()))
    service_invoker.invoke(call, CONTEXT)
    assert service_invoker.invoke(call, CONTEXT).from_cache is False
    assert transport.calls == 2
