import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from campaign_sync.errors import AuthError, ResponseFormatError, TransportError
from campaign_sync.transport import RequestSpec, ResilientTransport, RetryPolicy
from campaign_sync.utils.schemas import CampaignPage
from tests.fakes import HANG, Fault, build_stack, make_settings, recording_sleep, throttle, unavailable


def list_spec(timeout: float = 1.0) -> RequestSpec:
    return RequestSpec("GET", "/api/campaigns", timeout=timeout, params={"page": 1, "limit": 10})


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

    assert 1.0 <= policy.backoff(0) <= 2.0
    assert 2.0 <= policy.backoff(1) <= 3.0
    assert 4.0 <= policy.backoff(2) <= 5.0
    assert policy.backoff(10) == 5.0


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after_in_real_time(client, platform, settings) -> None:
    platform.list_faults = {1: throttle(2)}
    _, transport = build_stack(client, settings)

    response = await transport.execute(list_spec())

    assert response.status_code == 200
    assert platform.list_calls == 2
    first, second = platform.list_request_times
    assert second - first >= 2.0


@pytest.mark.asyncio
async def test_rate_limit_wait_includes_safety_margin(client, platform, settings) -> None:
    platform.list_faults = {1: throttle(7)}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    await transport.execute(list_spec())

    assert sleeps == [pytest.approx(7 + settings.RATE_LIMIT_SAFETY_MARGIN)]


@pytest.mark.asyncio
async def test_rate_limit_hint_from_http_date(client, platform, settings) -> None:
    retry_at = datetime.now(timezone.utc) + timedelta(seconds=30)
    platform.list_faults = {1: Fault(status=429, retry_after=format_datetime(retry_at, usegmt=True))}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    await transport.execute(list_spec())

    assert 25 <= sleeps[0] <= 31


@pytest.mark.asyncio
async def test_rate_limit_hint_from_body(client, platform, settings) -> None:
    platform.list_faults = {1: Fault(status=429, body={"error": "Rate limit exceeded", "retry_after": 4})}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    await transport.execute(list_spec())

    assert sleeps == [pytest.approx(4 + settings.RATE_LIMIT_SAFETY_MARGIN)]


@pytest.mark.asyncio
async def test_rate_limit_without_hint_uses_default_wait(client, platform, settings) -> None:
    platform.list_faults = {1: throttle()}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    await transport.execute(list_spec())

    expected = settings.RATE_LIMIT_DEFAULT_WAIT + settings.RATE_LIMIT_SAFETY_MARGIN
    assert sleeps == [pytest.approx(expected)]


@pytest.mark.asyncio
async def test_rate_limit_budget_is_separate_and_bounded(client, platform, tmp_path) -> None:
    settings = make_settings(tmp_path, RATE_LIMIT_MAX_RETRIES=4)
    platform.list_faults = {n: throttle(1) for n in range(1, 20)}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    with pytest.raises(TransportError) as excinfo:
        await transport.execute(list_spec())

    assert excinfo.value.kind == "rate_limit_exhausted"
    assert excinfo.value.status == 429
    assert platform.list_calls == 5
    assert len(sleeps) == 4


@pytest.mark.asyncio
async def test_throttling_does_not_consume_failure_budget(client, platform, tmp_path) -> None:
    settings = make_settings(tmp_path, MAX_RETRIES=2)
    # Five 429s and two 503s interleaved: more attempts than MAX_RETRIES alone allows
    platform.list_faults = {
        1: throttle(1),
        2: unavailable(),
        3: throttle(1),
        4: throttle(1),
        5: unavailable(),
        6: throttle(1),
        7: throttle(1),
    }
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    response = await transport.execute(list_spec())

    assert response.status_code == 200
    assert platform.list_calls == 8
    assert len(sleeps) == 7


@pytest.mark.asyncio
async def test_server_errors_are_retried_until_success(client, platform, settings) -> None:
    platform.list_faults = {1: unavailable(), 2: unavailable(502)}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    response = await transport.execute(list_spec())

    assert response.status_code == 200
    assert platform.list_calls == 3
    assert len(sleeps) == 2
    assert all(0 < s <= settings.RETRY_MAX_DELAY for s in sleeps)


@pytest.mark.asyncio
async def test_server_errors_exhaust_failure_budget(client, platform, settings) -> None:
    platform.list_faults = {n: unavailable(500) for n in range(1, 20)}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    with pytest.raises(TransportError) as excinfo:
        await transport.execute(list_spec())

    assert excinfo.value.kind == "server_error"
    assert excinfo.value.status == 500
    assert excinfo.value.exhausted is True
    assert platform.list_calls == settings.MAX_RETRIES + 1
    assert len(sleeps) == settings.MAX_RETRIES


@pytest.mark.asyncio
async def test_client_errors_fail_immediately(client, platform, settings) -> None:
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    with pytest.raises(TransportError) as excinfo:
        await transport.execute(RequestSpec("GET", "/api/unknown", timeout=1.0))

    assert excinfo.value.kind == "client_error"
    assert excinfo.value.status == 404
    assert excinfo.value.retryable is False
    assert sleeps == []


@pytest.mark.asyncio
async def test_hanging_request_times_out_and_is_retried(client, platform, settings) -> None:
    platform.list_faults = {1: HANG}
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    started = time.monotonic()
    response = await transport.execute(list_spec(timeout=0.2))

    assert response.status_code == 200
    assert platform.list_calls == 2
    assert len(sleeps) == 1
    assert time.monotonic() - started < 5


@pytest.mark.asyncio
async def test_hanging_requests_exhaust_as_timeout(client, platform, tmp_path) -> None:
    settings = make_settings(tmp_path, MAX_RETRIES=1)
    platform.list_faults = {1: HANG, 2: HANG}
    sleep, _ = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    with pytest.raises(TransportError) as excinfo:
        await transport.execute(list_spec(timeout=0.1))

    assert excinfo.value.kind == "timeout"


@pytest.mark.asyncio
async def test_network_errors_are_retried(settings) -> None:
    calls = 0

    async def flaky(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    sleep, sleeps = recording_sleep()
    async with httpx.AsyncClient(base_url="http://ads.test", transport=httpx.MockTransport(flaky)) as client:
        transport = ResilientTransport(client, RetryPolicy.from_settings(settings), sleep=sleep)
        response = await transport.execute(RequestSpec("GET", "/health", timeout=1.0, authenticated=False))

    assert response.json() == {"ok": True}
    assert calls == 2
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_unauthorized_refreshes_token_once(client, platform, settings) -> None:
    tokens, transport = build_stack(client, settings)
    await tokens.get_token()
    platform.expire_tokens()

    response = await transport.execute(list_spec())

    assert response.status_code == 200
    assert platform.auth_calls == 2


@pytest.mark.asyncio
async def test_repeated_unauthorized_raises_auth_error(client, platform, settings) -> None:
    platform.reject_all_bearer = True
    sleep, sleeps = recording_sleep()
    _, transport = build_stack(client, settings, sleep=sleep)

    with pytest.raises(AuthError):
        await transport.execute(list_spec())

    assert platform.auth_calls == 2
    assert platform.list_calls == 0
    assert sleeps == []


@pytest.mark.asyncio
async def test_execute_model_validates_body(client, platform, settings) -> None:
    _, transport = build_stack(client, settings)

    page = await transport.execute_model(list_spec(), CampaignPage)

    assert len(page.data) == 10
    assert page.pagination.has_more is True


@pytest.mark.asyncio
async def test_execute_model_rejects_unexpected_body(settings) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": []})

    async with httpx.AsyncClient(base_url="http://ads.test", transport=httpx.MockTransport(handler)) as client:
        transport = ResilientTransport(client, RetryPolicy.from_settings(settings))
        with pytest.raises(ResponseFormatError):
            await transport.execute_model(
                RequestSpec("GET", "/api/campaigns", timeout=1.0, authenticated=False), CampaignPage
            )
