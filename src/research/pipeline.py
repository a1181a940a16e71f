"""
Deep research pipeline: clarify -> research -> finalize.

Progress:  clarify 10 -> 20, research 30 -> 70, finalize 100.

Each provider-calling stage is bracketed by checkpoints: `in_flight=<stage>`
before the call, then `in_flight=None` plus the stage output after it. A
redelivered job whose checkpoint still shows a stage in flight must not call
the provider again (see orchestrator).
"""

from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from src.errors import JobProcessingError, RoutingFailure
from src.log import get_logger
from src.observability import tracer
from src.routing.router import Router

logger = get_logger(__name__)

CLARIFY_PROMPT = (
    "A user asked for in-depth research on the topic below. Write 3 to 5 short "
    "clarifying questions that would help focus the research. Return ONLY a JSON "
    "array of strings.\n\nTopic: {query}"
)

RESEARCH_PROMPT = (
    "Please conduct deep, comprehensive research on the following topic: {query}\n\n"
    "I need detailed information with recent sources. This research should be thorough "
    "and include comprehensive citations."
)

RESEARCH_SYSTEM_PROMPT = (
    "You are a research assistant with deep internet search capabilities. Conduct "
    "comprehensive research on the topic provided and synthesize a detailed report "
    "with multiple relevant sources. Include ALL relevant citations."
)

# Keys handled here, not forwarded to the provider
_PIPELINE_OPTIONS = {"generate_clarifying_questions", "clarification_answers", "priority"}

Reporter = Callable[..., None]


def parse_questions(text: str) -> List[str]:
    """JSON array when the model complied, else one question per non-empty line."""
    text = (text or "").strip()
    match = re.search(r"\[[\s\S]*\]", text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, list):
                return [str(q).strip() for q in data if str(q).strip()]
        except ValueError:
            pass
    lines = [re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", ln).strip() for ln in text.splitlines()]
    return [ln for ln in lines if ln.endswith("?")]


def format_answers(answers: Any) -> str:
    """Render clarification answers (dict or list of {question, answer}) as prompt context."""
    if isinstance(answers, dict):
        pairs = list(answers.items())
    elif isinstance(answers, list):
        pairs = [(a.get("question", ""), a.get("answer", "")) for a in answers if isinstance(a, dict)]
    else:
        pairs = []
    pairs = [(q, a) for q, a in pairs if str(a).strip()]
    if not pairs:
        return ""
    body = "".join(f"Question: {q}\nAnswer: {a}\n\n" for q, a in pairs)
    return "\n\nAdditional context provided by the user:\n" + body


class ResearchPipeline:
    def __init__(
        self,
        router: Router,
        max_research_seconds: float = 300,
        conversational: Optional[str] = None,
        research: Optional[str] = None,
    ):
        self.router = router
        self.max_research_seconds = float(max_research_seconds)
        self.conversational = conversational or router.conversational
        self.research = research or router.research

    def run(
        self,
        job_id: str,
        query: str,
        options: Dict[str, Any],
        checkpoint: Dict[str, Any],
        report: Reporter,
    ) -> Dict[str, Any]:
        """
        Run the remaining stages and return the job result.

        `report(progress, stage=None, **checkpoint)` persists and publishes progress.
        Raises JobProcessingError when the research stage cannot produce content.
        """
        completed = list(checkpoint.get("completed_stages") or [])
        questions: List[str] = list(checkpoint.get("clarifying_questions") or [])

        if "clarify" not in completed:
            report(10)
            if options.get("generate_clarifying_questions") is not False:
                questions = self._clarify(job_id, query, report)
            completed.append("clarify")
            report(20, stage="clarify", completed_stages=completed, clarifying_questions=questions)

        research = checkpoint.get("research")
        if "research" not in completed or not research:
            research = self._research(job_id, query, options, report)
            completed.append("research")
            report(70, stage="research", completed_stages=completed, research=research, in_flight=None)

        with tracer.start_as_current_span("research.finalize", attributes={"job_id": job_id}):
            return {
                "query": query,
                "content": research.get("content", ""),
                "sources": list(research.get("sources") or []),
                "clarifying_questions": questions,
                "provider_used": research.get("provider_used"),
                "model": research.get("model"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def _clarify(self, job_id: str, query: str, report: Reporter) -> List[str]:
        report(10, in_flight="clarify")
        questions: List[str] = []
        with tracer.start_as_current_span("research.clarify", attributes={"job_id": job_id}):
            try:
                result = self.router.route(
                    [{"role": "user", "content": CLARIFY_PROMPT.format(query=query)}],
                    explicit_provider_hint=self.conversational,
                )
                questions = parse_questions(result.response)
            except RoutingFailure as e:
                logger.error("[pipeline] clarifying questions failed for job %s: %s", job_id, e)
        report(10, in_flight=None)
        return questions

    def _research(self, job_id: str, query: str, options: Dict[str, Any], report: Reporter) -> Dict[str, Any]:
        prompt = RESEARCH_PROMPT.format(query=query) + format_answers(options.get("clarification_answers"))
        call_options = {k: v for k, v in options.items() if k not in _PIPELINE_OPTIONS}
        call_options["deep"] = True
        call_options.setdefault("timeout", self.max_research_seconds)
        messages = [
            {"role": "system", "content": RESEARCH_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        report(30, in_flight="research")
        with tracer.start_as_current_span("research.deep_research", attributes={"job_id": job_id}):
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"research-{job_id[:8]}")
            try:
                future = pool.submit(self.router.route, messages, self.research, call_options)
                result = future.result(timeout=self.max_research_seconds)
            except FutureTimeout as e:
                raise JobProcessingError(
                    f"Deep research query timed out after {int(self.max_research_seconds)} seconds"
                ) from e
            except RoutingFailure as e:
                raise JobProcessingError(f"Deep research failed: {e}") from e
            finally:
                pool.shutdown(wait=False)

        if not (result.response or "").strip():
            raise JobProcessingError("Deep research returned no content")
        return {
            "content": result.response,
            "sources": list(result.citations),
            "provider_used": result.provider_used,
            "model": result.model,
            "attempts": list(result.attempts),
        }
