"""
Research job lifecycle: submit -> queue -> process -> completed / failed,
including redelivery and resume from checkpoints.
"""

import time
from unittest.mock import MagicMock

import pytest

from conftest import FakeClient, provider_error
from src.errors import JobNotFoundError, JobSubmissionError
from src.llm.providers import ProviderResponse
from src.research import job_store
from src.research.orchestrator import INTERRUPTED_ERROR, JobOrchestrator
from src.research.pipeline import ResearchPipeline, format_answers, parse_questions
from src.routing.router import Router
from src.tasks.queue import WorkUnit

QUESTIONS = '["Which customer segment?", "Which region?"]'


def _orchestrator(registry, clients, queue, published=None, max_research_seconds=30, **kw):
    router = Router(registry, clients, conversational="claude", research="perplexity")
    pipeline = ResearchPipeline(router, max_research_seconds=max_research_seconds)
    publish = published.append if published is not None else None
    return JobOrchestrator(pipeline, queue, publish=publish, **kw)


@pytest.fixture
def clients():
    return {
        "claude": FakeClient("claude", replies=[QUESTIONS]),
        "perplexity": FakeClient("perplexity", replies=["Deep findings"], citations=["https://example.com/a"]),
    }


def test_submit_then_process_completes(db, registry, clients, memory_queue):
    published = []
    orch = _orchestrator(registry, clients, memory_queue, published)

    job = orch.submit("price sensitivity for $20 widget")
    assert job["status"] == "queued"
    assert job["queue_job_id"].startswith("normal:")
    assert orch.poll(job["id"])["status"] == "queued"

    unit = memory_queue.claim(1)[0]
    done = orch.process(unit)

    assert done["status"] == "completed"
    assert done["progress"] == 100
    result = orch.poll(job["id"])["result"]
    assert result["query"] == "price sensitivity for $20 widget"
    assert result["content"] == "Deep findings"
    assert result["sources"] == ["https://example.com/a"]
    assert result["clarifying_questions"] == ["Which customer segment?", "Which region?"]
    assert result["provider_used"] == "perplexity"

    assert len(clients["claude"].calls) == 1
    assert len(clients["perplexity"].calls) == 1
    research_call = clients["perplexity"].calls[0]
    assert research_call["options"]["deep"] is True
    assert "priority" not in research_call["options"]

    types = [m["type"] for m in published]
    assert types[0] == "research_progress"
    assert types[-1] == "research_completed"
    assert all(m["topic"] == "research" and m["job_id"] == job["id"] for m in published)
    progress = [m["progress"] for m in published]
    assert progress == sorted(progress)
    assert published[-1]["result"]["content"] == "Deep findings"


@pytest.mark.parametrize(
    "query,options",
    [
        ("", None),
        ("   ", None),
        ("x" * 101, None),
        ("ok", {"priority": "urgent"}),
        ("ok", ["not", "a", "dict"]),
    ],
)
def test_submit_rejects_bad_input(db, registry, clients, memory_queue, query, options):
    orch = _orchestrator(registry, clients, memory_queue, max_query_chars=100)
    with pytest.raises(JobSubmissionError):
        orch.submit(query, options)
    assert memory_queue.pending_count() == 0


def test_enqueue_failure_marks_job_failed(db, registry, clients):
    queue = MagicMock()
    queue.enqueue.side_effect = ConnectionError("redis down")
    orch = _orchestrator(registry, clients, queue)
    with pytest.raises(JobSubmissionError):
        orch.submit("solar adoption in Kenya")
    jobs = orch.list_jobs()
    assert len(jobs) == 1
    assert jobs[0]["status"] == "failed"
    assert "enqueue failed" in jobs[0]["error"]


def test_priority_is_passed_to_queue(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    job = orch.submit("battery chemistry", {"priority": "high"})
    assert job["queue_job_id"].startswith("high:")
    assert job["options"]["priority"] == "high"


def test_poll_unknown_job(db, registry, clients, memory_queue):
    with pytest.raises(JobNotFoundError):
        _orchestrator(registry, clients, memory_queue).poll("nope")


def test_redelivery_with_provider_call_in_flight_fails_without_calling(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    job = orch.submit("coffee futures")
    unit = memory_queue.claim(1)[0]

    # first delivery died right after marking the research call in flight
    job_store.begin_processing(job["id"])
    job_store.save_checkpoint(job["id"], progress=30, in_flight="research")

    out = orch.process(unit)
    assert out["status"] == "failed"
    assert out["error"] == INTERRUPTED_ERROR
    assert clients["claude"].calls == []
    assert clients["perplexity"].calls == []


def test_redelivery_resumes_after_completed_stage(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    job = orch.submit("coffee futures")
    unit = memory_queue.claim(1)[0]

    job_store.begin_processing(job["id"])
    job_store.save_checkpoint(
        job["id"], stage="clarify", progress=20,
        completed_stages=["clarify"], clarifying_questions=["Arabica or robusta?"], in_flight=None,
    )

    out = orch.process(unit)
    assert out["status"] == "completed"
    assert out["result"]["clarifying_questions"] == ["Arabica or robusta?"]
    assert clients["claude"].calls == []
    assert len(clients["perplexity"].calls) == 1
    assert out["attempts"] == 2


def test_terminal_job_is_not_reprocessed(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    orch.submit("coffee futures")
    unit = memory_queue.claim(1)[0]
    first = orch.process(unit)
    second = orch.process(unit)
    assert first["status"] == second["status"] == "completed"
    assert len(clients["perplexity"].calls) == 1


def test_clarify_failure_does_not_fail_job(db, registry, memory_queue):
    clients = {
        "claude": FakeClient("claude", replies=[provider_error("claude", "auth_error", 401)]),
        "perplexity": FakeClient("perplexity", replies=["Findings"]),
    }
    orch = _orchestrator(registry, clients, memory_queue)
    orch.submit("coffee futures")
    out = orch.process(memory_queue.claim(1)[0])
    assert out["status"] == "completed"
    assert out["result"]["clarifying_questions"] == []


def test_clarify_can_be_disabled(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    orch.submit("coffee futures", {"generate_clarifying_questions": False})
    out = orch.process(memory_queue.claim(1)[0])
    assert out["status"] == "completed"
    assert clients["claude"].calls == []


def test_clarification_answers_reach_research_prompt(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    orch.submit("coffee futures", {"clarification_answers": {"Which region?": "Brazil"}})
    orch.process(memory_queue.claim(1)[0])
    prompt = clients["perplexity"].calls[0]["messages"][-1]["content"]
    assert "Question: Which region?\nAnswer: Brazil" in prompt
    assert "clarification_answers" not in clients["perplexity"].calls[0]["options"]


def test_research_routing_failure_fails_job(db, registry, memory_queue):
    published = []
    clients = {
        "claude": FakeClient("claude", replies=[QUESTIONS]),
        "perplexity": FakeClient("perplexity", replies=[provider_error("perplexity", "auth_error", 401)]),
    }
    orch = _orchestrator(registry, clients, memory_queue, published)
    orch.submit("coffee futures")
    out = orch.process(memory_queue.claim(1)[0])
    assert out["status"] == "failed"
    assert out["error"].startswith("Deep research failed")
    assert published[-1]["type"] == "research_failed"
    assert published[-1]["error"] == out["error"]


def test_empty_research_content_fails_job(db, registry, memory_queue):
    clients = {
        "claude": FakeClient("claude", replies=[QUESTIONS]),
        "perplexity": FakeClient("perplexity", replies=[ProviderResponse(text="   ")]),
    }
    orch = _orchestrator(registry, clients, memory_queue)
    orch.submit("coffee futures")
    out = orch.process(memory_queue.claim(1)[0])
    assert out["status"] == "failed"


class SlowClient(FakeClient):
    def invoke(self, messages, options=None):
        time.sleep(0.5)
        return super().invoke(messages, options)


def test_research_timeout_fails_job(db, registry, memory_queue):
    clients = {"claude": FakeClient("claude", replies=[QUESTIONS]), "perplexity": SlowClient("perplexity")}
    orch = _orchestrator(registry, clients, memory_queue, max_research_seconds=0.05)
    orch.submit("coffee futures")
    out = orch.process(memory_queue.claim(1)[0])
    assert out["status"] == "failed"
    assert "timed out" in out["error"]


def test_too_many_deliveries_fails_job(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue, max_deliveries=3)
    orch.submit("coffee futures")
    unit = memory_queue.claim(1)[0]
    unit.deliveries = 4
    out = orch.process(unit)
    assert out["status"] == "failed"
    assert "deliveries" in out["error"]
    assert clients["perplexity"].calls == []


def test_malformed_unit_is_dropped(db, registry, clients, memory_queue):
    orch = _orchestrator(registry, clients, memory_queue)
    assert orch.process(WorkUnit("normal:x", "other", {"job_id": "j"})) is None
    assert orch.process(WorkUnit("normal:y", "research", {})) is None
    assert orch.process(WorkUnit("normal:z", "research", {"job_id": "missing"})) is None


def test_publish_errors_do_not_break_processing(db, registry, clients, memory_queue):
    def broken(_msg):
        raise RuntimeError("socket gone")

    router = Router(registry, clients, conversational="claude", research="perplexity")
    orch = JobOrchestrator(ResearchPipeline(router), memory_queue, publish=broken)
    orch.submit("coffee futures")
    assert orch.process(memory_queue.claim(1)[0])["status"] == "completed"


def test_parse_questions_variants():
    assert parse_questions('Sure! ["A?", "B?"]') == ["A?", "B?"]
    assert parse_questions("1. First?\n2) Second?\nNot a question") == ["First?", "Second?"]
    assert parse_questions("") == []


def test_format_answers_skips_blank():
    assert format_answers({"Q1": "", "Q2": "yes"}).endswith("Question: Q2\nAnswer: yes\n\n")
    assert format_answers([{"question": "Q", "answer": " "}]) == ""
    assert format_answers(None) == ""


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
