"""ContentGenerator backed by an OpenAI-style chat-completions endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from pydantic import ValidationError

from engines.base import ContentGenerator, GenerationError
from engines.topic_selector import TopicSpec, split_hierarchical
from env_validation import get_env_float
from schemas import CandidateItem, GeneratedBatch, parse_json_safe

logger = logging.getLogger(__name__)
_GEN_LOGGER = logging.getLogger("quizfeed.generator")

MODEL_ID = os.getenv("MODEL_ID", "gpt-4o-mini")
GENERATOR_URL = os.getenv("GENERATOR_URL", "http://localhost:4891/v1/chat/completions")

SYSTEM_PROMPT = """You write short multiple-choice quiz questions for a personalised trivia feed.
Reply with exactly one JSON object and nothing else:
{"questions": [{"question": "...", "answers": [{"text": "...", "isCorrect": true}, ...],
  "category": "<topic>", "subtopic": "<optional>", "branch": "<optional>",
  "tags": ["..."], "difficulty": "easy|medium|hard", "learningCapsule": "<one-sentence fact>"}]}
Every question has four answers and exactly one correct answer."""

_RECENT_LIMIT = 10


class LLMQuestionGenerator(ContentGenerator):
    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        temperature: float = 0.7,
        post: Callable[..., Any] = requests.post,
    ):
        self.url = url or GENERATOR_URL
        self.model = model or MODEL_ID
        self.timeout = timeout if timeout is not None else get_env_float("GENERATION_TIMEOUT", 60.0)
        self.temperature = temperature
        self._post = post

    def build_messages(self, spec: TopicSpec, recent_question_texts: Sequence[str]) -> List[Dict[str, str]]:
        main_topics, focus = split_hierarchical(spec.enhanced_topics)
        lines = [
            f"Write {spec.primary_count} questions on these topics: {', '.join(main_topics)}.",
        ]
        if focus:
            lines.append(
                "Favour these focus areas: "
                + "; ".join(f"{topic} ({secondary})" for topic, secondary in focus)
                + "."
            )
        if spec.adjacent_count and spec.adjacent_topics:
            lines.append(
                f"Also write {spec.adjacent_count} questions on related topics: "
                f"{', '.join(spec.adjacent_topics)}."
            )
        if spec.preferred_tags:
            lines.append(f"Tags the learner enjoys: {', '.join(spec.preferred_tags)}.")
        if spec.phase is not None:
            lines.append("The learner is new; keep most questions at easy or medium difficulty.")
        recent = [text for text in recent_question_texts if text][:_RECENT_LIMIT]
        if recent:
            lines.append("Do not repeat or rephrase any of these recent questions:")
            lines.extend(f"- {text}" for text in recent)
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "\n".join(lines)},
        ]

    def _call(self, messages: List[Dict[str, str]]) -> str:
        payload = {"model": self.model, "messages": messages, "temperature": self.temperature}
        try:
            response = self._post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise GenerationError(f"generator HTTP {status}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise GenerationError(f"generator request failed: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise GenerationError(f"unexpected generator response: {str(data)[:200]}") from None
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("generator returned no content")
        return content

    async def generate(
        self, spec: TopicSpec, recent_question_texts: Sequence[str]
    ) -> List[CandidateItem]:
        messages = self.build_messages(spec, recent_question_texts)
        start = time.perf_counter()
        content = await asyncio.to_thread(self._call, messages)
        latency_ms = int((time.perf_counter() - start) * 1000)

        try:
            batch = parse_json_safe(content, GeneratedBatch)
        except (ValidationError, ValueError) as exc:
            raise GenerationError(f"generator returned malformed JSON: {exc}") from exc

        items = [item for item in batch.questions if item.correct_answer is not None]
        dropped = len(batch.questions) - len(items)
        if dropped:
            logger.warning("Discarded %d generated questions without a correct answer", dropped)
        _GEN_LOGGER.info(
            json.dumps(
                {
                    "event": "generation_call",
                    "model": self.model,
                    "latency_ms": latency_ms,
                    "topics": spec.enhanced_topics,
                    "adjacent": spec.adjacent_topics,
                    "returned": len(batch.questions),
                    "usable": len(items),
                },
                ensure_ascii=False,
            )
        )
        return items
