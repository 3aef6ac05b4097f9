"""Tests for the non-streaming provider: circuit breaker, timeout/retry kwargs, response parsing."""

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from fieldbot.config.schema import ResilienceConfig
from fieldbot.providers.circuit_breaker import CircuitBreaker
from fieldbot.providers.litellm_provider import LiteLLMProvider, parse_completion, parse_tool_calls


def _response(content="ok", tool_calls=None, finish_reason="stop", usage=(12, 3)):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1], total_tokens=sum(usage)),
    )


# ---------------------------------------------------------------------------
# 1. ResilienceConfig defaults
# ---------------------------------------------------------------------------

class TestResilienceConfigDefaults:
    def test_defaults(self):
        rc = ResilienceConfig()
        assert rc.timeout == 120
        assert rc.max_retries == 2
        assert rc.circuit_breaker_threshold == 5
        assert rc.circuit_breaker_cooldown == 60

    def test_camel_case_keys(self):
        rc = ResilienceConfig.model_validate({"maxRetries": 0, "circuitBreakerCooldown": 5})
        assert rc.max_retries == 0
        assert rc.circuit_breaker_cooldown == 5


# ---------------------------------------------------------------------------
# 2. Circuit breaker logic
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    def _make_breaker(self, threshold=3, cooldown=10):
        clock = FakeClock()
        return CircuitBreaker(threshold, cooldown, clock=clock), clock

    def test_initially_closed(self):
        breaker, _ = self._make_breaker()
        assert breaker.rejection() is None

    def test_opens_after_threshold(self):
        breaker, _ = self._make_breaker(threshold=3)
        for _ in range(3):
            breaker.record_failure()
        assert "Circuit breaker open: 3 consecutive failures" in breaker.rejection()

    def test_success_resets_counter(self):
        breaker, _ = self._make_breaker(threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.failures == 0
        assert breaker.rejection() is None

    def test_half_open_after_cooldown(self):
        breaker, clock = self._make_breaker(threshold=2, cooldown=10)
        breaker.record_failure()
        breaker.record_failure()
        clock.now += 10
        assert breaker.rejection() is None
        breaker.record_failure()
        assert breaker.rejection() is not None

    def test_disabled_with_zero_threshold(self):
        breaker, _ = self._make_breaker(threshold=0)
        for _ in range(10):
            breaker.record_failure()
        assert breaker.rejection() is None

    def test_provider_builds_breaker_from_config(self):
        rc = ResilienceConfig(circuit_breaker_threshold=4, circuit_breaker_cooldown=7)
        breaker = LiteLLMProvider(api_key="fake", resilience_config=rc).breaker
        assert (breaker.threshold, breaker.cooldown) == (4, 7)
        assert LiteLLMProvider(api_key="fake").breaker is None

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_the_call(self):
        rc = ResilienceConfig(circuit_breaker_threshold=1, circuit_breaker_cooldown=60)
        p = LiteLLMProvider(api_key="fake", resilience_config=rc)
        p.breaker.record_failure()

        with patch("fieldbot.providers.litellm_provider.acompletion") as mock_call:
            resp = await p.chat(messages=[{"role": "user", "content": "hi"}])

        mock_call.assert_not_called()
        assert resp.finish_reason == "error"
        assert "Circuit breaker open" in resp.content


# ---------------------------------------------------------------------------
# 3. Timeout / retry kwargs
# ---------------------------------------------------------------------------

class TestTimeoutRetryKwargs:
    @pytest.mark.asyncio
    async def test_acompletion_receives_timeout_retries_and_tools(self):
        p = LiteLLMProvider(api_key="fake", resilience_config=ResilienceConfig(timeout=60, max_retries=2))
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return _response()

        tools = [{"type": "function", "function": {"name": "search_sites"}}]
        with patch("fieldbot.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
            resp = await p.chat(messages=[{"role": "user", "content": ""}], tools=tools, model="gpt-4o-mini")

        assert captured["request_timeout"] == 60
        assert captured["num_retries"] == 2
        assert captured["tool_choice"] == "auto"
        assert captured["model"] == "gpt-4o-mini"
        assert captured["messages"] == [{"role": "user", "content": "(empty)"}]
        assert resp.content == "ok"
        assert resp.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}

    @pytest.mark.asyncio
    async def test_timeout_returns_error_and_feeds_breaker(self):
        p = LiteLLMProvider(api_key="fake", resilience_config=ResilienceConfig(timeout=1, circuit_breaker_threshold=2))

        async def slow_acompletion(**kwargs):
            await asyncio.sleep(999)

        with patch("fieldbot.providers.litellm_provider.acompletion", side_effect=slow_acompletion):
            with patch("fieldbot.providers.litellm_provider.asyncio.wait_for", side_effect=asyncio.TimeoutError):
                first = await p.chat(messages=[{"role": "user", "content": "hi"}])
                await p.chat(messages=[{"role": "user", "content": "hi"}])

        assert first.finish_reason == "error"
        assert "timed out" in first.content
        assert p.breaker.rejection() is not None

    @pytest.mark.asyncio
    async def test_no_resilience_config_skips_injection(self):
        p = LiteLLMProvider(api_key="fake", resilience_config=None)
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return _response()

        with patch("fieldbot.providers.litellm_provider.acompletion", side_effect=fake_acompletion):
            await p.chat(messages=[{"role": "user", "content": "hi"}])

        assert "request_timeout" not in captured
        assert "num_retries" not in captured

    @pytest.mark.asyncio
    async def test_api_key_masked_in_error_content(self):
        key = "sk-live-abcdefghijklmnop"
        p = LiteLLMProvider(api_key=key)

        with patch("fieldbot.providers.litellm_provider.acompletion", side_effect=RuntimeError(f"bad key {key}")):
            resp = await p.chat(messages=[{"role": "user", "content": "hi"}])

        assert resp.finish_reason == "error"
        assert key not in resp.content


# ---------------------------------------------------------------------------
# 4. Response parsing
# ---------------------------------------------------------------------------

def test_tool_calls_parsed_with_repaired_arguments():
    raw_calls = [
        {"id": "call_a", "function": {"name": "search_sites", "arguments": '{"query": "เซ็นทรัล"'}},
        {"function": {"name": "create_ticket", "arguments": {"work_type_code": "pm"}}},
        {"id": "call_3", "function": {"name": "", "arguments": "{}"}},
    ]
    resp = parse_completion(_response(content=None, tool_calls=raw_calls, finish_reason="tool_calls"))

    assert resp.has_tool_calls
    assert [(c.id, c.name, c.arguments) for c in resp.tool_calls] == [
        ("call_a", "search_sites", {"query": "เซ็นทรัล"}),
        ("call_1", "create_ticket", {"work_type_code": "pm"}),
    ]
    assert resp.finish_reason == "tool_calls"


@pytest.mark.parametrize(
    "arguments,expected",
    [
        ("", {}),
        ("[1, 2]", {}),
        (None, {}),
        ('{"site_id": "abc",}', {"site_id": "abc"}),
    ],
)
def test_tool_call_arguments_are_always_a_dict(arguments, expected):
    message = {"tool_calls": [{"id": "c1", "function": {"name": "get_site", "arguments": arguments}}]}
    assert parse_tool_calls(message)[0].arguments == expected


def test_missing_usage_gives_empty_dict():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="hi", tool_calls=None), finish_reason=None)],
        usage=None,
    )
    resp = parse_completion(response)
    assert resp.usage == {}
    assert resp.finish_reason == "stop"
