"""
Router tests: selection policy, single failover, recorded outcomes.
"""

import pytest

from conftest import FakeClient, provider_error
from src.errors import RoutingFailure
from src.routing.router import SEARCH_UNAVAILABLE_NOTE, Router
from src.routing.status_registry import Outcome, ProviderState


def _user(text):
    return [{"role": "user", "content": text}]


def _recording(registry):
    seen = []
    original = registry.record_outcome

    def wrapper(name, outcome, *args, **kwargs):
        seen.append((name, outcome))
        return original(name, outcome, *args, **kwargs)

    registry.record_outcome = wrapper
    return seen


def test_plain_question_goes_to_conversational(router, fake_clients):
    result = router.route(_user("Help me phrase a thank-you note"))
    assert result.provider_used == "claude"
    assert result.attempts == ["claude"]
    assert result.response == "reply from claude"
    assert len(fake_clients["perplexity"].calls) == 0


def test_research_keywords_go_to_research_provider(router, fake_clients):
    result = router.route(_user("What are the latest news on battery recycling?"))
    assert result.provider_used == "perplexity"
    assert result.citations == ["https://example.com/source"]


def test_current_info_pattern_goes_to_research(router):
    assert router.is_research_query("Tell me about elections in 2024")
    assert router.is_research_query("what's happening in Lisbon")


def test_visualization_beats_research_keywords(router):
    result = router.route(_user("Create a chart of the latest statistics on rainfall"))
    assert result.provider_used == "claude"


def test_explicit_hint_wins(router):
    result = router.route(_user("Write me a poem"), explicit_provider_hint="perplexity")
    assert result.provider_used == "perplexity"


def test_unknown_hint_is_ignored(router):
    assert router.route(_user("Write me a poem"), explicit_provider_hint="gemini").provider_used == "claude"


def test_offline_hint_falls_back_to_policy(router, registry):
    registry.record_outcome("perplexity", Outcome.auth_error)
    assert router.route(_user("Write me a poem"), explicit_provider_hint="perplexity").provider_used == "claude"


def test_offline_preferred_provider_uses_alternative(router, registry):
    registry.record_outcome("perplexity", Outcome.auth_error)
    result = router.route(_user("latest research on sleep"))
    assert result.provider_used == "claude"
    assert result.attempts == ["claude"]


def test_rate_limited_primary_fails_over_once(registry, clock):
    clients = {
        "claude": FakeClient("claude", replies=["fallback answer"]),
        "perplexity": FakeClient("perplexity", replies=[provider_error("perplexity", "rate_limited", 429)]),
    }
    router = Router(registry, clients, conversational="claude", research="perplexity")
    seen = _recording(registry)

    result = router.route(_user("Search the web for recent solar prices"), options={"model": "sonar-pro"})

    assert result.provider_used == "claude"
    assert result.response == "fallback answer"
    assert result.attempts == ["perplexity", "claude"]
    assert seen == [("perplexity", Outcome.rate_limited), ("claude", Outcome.success)]
    assert registry.get_status("perplexity").state == ProviderState.throttled
    assert registry.get_status("claude").state == ProviderState.connected

    fallback_call = clients["claude"].calls[0]
    assert fallback_call["messages"][-1]["content"].endswith(SEARCH_UNAVAILABLE_NOTE)
    assert "model" not in fallback_call["options"]
    # the failed attempt saw the original message
    assert SEARCH_UNAVAILABLE_NOTE not in clients["perplexity"].calls[0]["messages"][-1]["content"]


def test_conversational_failover_has_no_note(registry):
    clients = {
        "claude": FakeClient("claude", replies=[provider_error("claude", "server_error", 503)]),
        "perplexity": FakeClient("perplexity"),
    }
    router = Router(registry, clients, conversational="claude", research="perplexity")
    result = router.route(_user("Write me a poem"))
    assert result.provider_used == "perplexity"
    assert SEARCH_UNAVAILABLE_NOTE not in clients["perplexity"].calls[0]["messages"][-1]["content"]
    assert registry.get_status("claude").state == ProviderState.degraded


def test_both_offline_raises_without_calls(router, registry, fake_clients):
    registry.record_outcome("claude", Outcome.auth_error)
    registry.record_outcome("perplexity", Outcome.auth_error)
    with pytest.raises(RoutingFailure) as info:
        router.route(_user("hello"))
    assert info.value.attempts == []
    assert fake_clients["claude"].calls == []
    assert fake_clients["perplexity"].calls == []


def test_non_retryable_error_is_not_failed_over(registry):
    clients = {
        "claude": FakeClient("claude", replies=[provider_error("claude", "auth_error", 401)]),
        "perplexity": FakeClient("perplexity"),
    }
    router = Router(registry, clients, conversational="claude", research="perplexity")
    with pytest.raises(RoutingFailure) as info:
        router.route(_user("Write me a poem"))
    assert info.value.attempts == ["claude"]
    assert clients["perplexity"].calls == []
    assert registry.get_status("claude").state == ProviderState.offline


def test_at_most_two_attempts(registry):
    clients = {
        "claude": FakeClient("claude", replies=[provider_error("claude", "server_error", 500)]),
        "perplexity": FakeClient("perplexity", replies=[provider_error("perplexity", "rate_limited", 429)]),
    }
    router = Router(registry, clients, conversational="claude", research="perplexity")
    seen = _recording(registry)
    with pytest.raises(RoutingFailure) as info:
        router.route(_user("Write me a poem"))
    assert info.value.attempts == ["claude", "perplexity"]
    assert len(info.value.errors) == 2
    assert seen == [("claude", Outcome.server_error), ("perplexity", Outcome.rate_limited)]


def test_deep_confirmation_makes_no_provider_call(router, fake_clients):
    result = router.route(_user("go deep"), options={"confirm_deep_research": True})
    assert result.mode == "deep"
    assert result.provider_used == "perplexity"
    assert fake_clients["claude"].calls == [] and fake_clients["perplexity"].calls == []


@pytest.mark.parametrize("history", [[], [{"role": "assistant", "content": "hi"}]])
def test_history_without_user_message_is_rejected(router, history):
    with pytest.raises(RoutingFailure):
        router.route(history)


def test_routes_on_last_user_message(router):
    history = [
        {"role": "user", "content": "latest news please"},
        {"role": "assistant", "content": "here"},
        {"role": "user", "content": "thanks, now write a haiku"},
    ]
    assert router.route(history).provider_used == "claude"


def test_success_records_model_version(router, registry):
    router.route(_user("hello"))
    assert registry.get_status("claude").model_version == "claude-test-model"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
