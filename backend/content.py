"""
Content resolution for learning paths.

Turns a (subject, topic, subtopic) selection into subtopic lists, explanations
with a matching video, and follow-up answers. Generated content is memoized in
a TTLCache keyed by request identity.
"""

import hashlib
import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from cache import SingleFlight, TTLCache


# ==================== Errors ====================

class ContentGenerationFailed(Exception):
    """Generation failed and no meaningful fallback exists."""
    status_code = 500


class ProviderUnavailable(ContentGenerationFailed):
    """Network, timeout or API failure calling an external provider."""
    status_code = 503


class InvalidProviderOutput(ContentGenerationFailed):
    """Provider output could not be parsed into the expected shape."""
    status_code = 502


# ==================== Domain Types ====================

@dataclass(frozen=True)
class LearningPathKey:
    subject: str
    topic: str
    subtopic: Optional[str] = None


@dataclass(frozen=True)
class QuestionHistoryItem:
    question: str
    answer: str


@dataclass(frozen=True)
class ExplanationResult:
    explanation: str
    video_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {"explanation": self.explanation, "videoUrl": self.video_url}


@dataclass(frozen=True)
class AnswerResult:
    answer: str

    def to_dict(self) -> dict:
        return {"answer": self.answer}


YOUTUBE_EMBED_URL = "https://www.youtube.com/embed/{video_id}"


def embed_url(video_id: str) -> str:
    return YOUTUBE_EMBED_URL.format(video_id=video_id)


# ==================== Cache Keys ====================

SUBTOPICS_NAMESPACE = "subtopics"
EXPLANATION_NAMESPACE = "explanation"


def _make_cache_key(namespace: str, *parts: Optional[str]) -> str:
    """Namespace prefix + hash of the exact (case-sensitive) parts."""
    key_string = json.dumps(list(parts), ensure_ascii=False)
    return f"{namespace}:{hashlib.md5(key_string.encode()).hexdigest()}"


def subtopics_cache_key(subject: str, topic: str) -> str:
    return _make_cache_key(SUBTOPICS_NAMESPACE, subject, topic)


def explanation_cache_key(key: LearningPathKey) -> str:
    return _make_cache_key(EXPLANATION_NAMESPACE, key.subject, key.topic, key.subtopic)


# ==================== Subtopic Extraction ====================

ENUMERATION_MARKER = re.compile(r'^\d+\.\s*')
CODE_FENCE = re.compile(r'^```[\w-]*\s*\n?(.*?)\n?```$', re.DOTALL)


def _strip_code_fence(raw: str) -> str:
    match = CODE_FENCE.match(raw)
    return match.group(1).strip() if match else raw


def extract_subtopics(raw: Optional[str]) -> List[str]:
    """
    Parse a model response into an ordered list of subtopic labels.

    The model is asked for a JSON array of strings, but the output is not
    guaranteed to be valid JSON. When strict parsing fails, fall back to one
    item per line with any leading "1." style marker removed.

    Raises:
        InvalidProviderOutput: if no non-empty list of non-empty strings
            can be recovered.
    """
    text = _strip_code_fence((raw or "").strip())

    try:
        parsed = json.loads(text)
    except ValueError as e:
        print(f"Failed to parse subtopics as JSON ({e}), falling back to line extraction")
        parsed = [
            ENUMERATION_MARKER.sub('', line.strip()).strip()
            for line in text.splitlines()
            if line.strip()
        ]
        parsed = [line for line in parsed if line]

    if not isinstance(parsed, list) or not parsed:
        raise InvalidProviderOutput("Invalid subtopics format received from model")

    subtopics = []
    for item in parsed:
        if not isinstance(item, str) or not item.strip():
            raise InvalidProviderOutput(f"Invalid subtopic entry: {item!r}")
        subtopics.append(item.strip())
    return subtopics


# ==================== Conversation Context ====================

def _get_qa_parts(item: Any) -> Tuple[str, str]:
    # Handle both dict and object formats
    if isinstance(item, dict):
        return item.get('question', ''), item.get('answer', '')
    return item.question, item.answer


def build_context(history: Sequence[Any]) -> str:
    """Render Q/A history oldest first as 'Q: ...\\nA: ...' blocks separated by a blank line."""
    if not history:
        return ""
    blocks = []
    for item in history:
        question, answer = _get_qa_parts(item)
        blocks.append(f"Q: {question}\nA: {answer}")
    return "\n\n".join(blocks)


def trim_history(history: Sequence[Any], max_turns: Optional[int]) -> List[Any]:
    """Keep only the most recent max_turns items. None or 0 keeps everything."""
    items = list(history or [])
    if max_turns and len(items) > max_turns:
        return items[-max_turns:]
    return items


# ==================== Prompts ====================

TUTOR_SYSTEM_PROMPT = "You are an AI tutor specializing in providing clear and concise answers to student questions."


def subtopics_prompt(subject: str, topic: str, count: int = 5) -> str:
    example = ", ".join(f'"Subtopic {i}"' for i in range(1, count + 1))
    return f"""Generate a list of {count} important subtopics for {topic} in {subject}.
Return the response as a JSON array of strings, like this:
[{example}]"""


def explanation_prompt(key: LearningPathKey) -> str:
    return f"Explain the subtopic '{key.subtopic}' within the topic '{key.topic}' in the subject '{key.subject}' for a student."


def video_query(key: LearningPathKey) -> str:
    return f"{key.subject} {key.topic} {key.subtopic} education"


def question_prompt(key: LearningPathKey, context: str, question: str) -> str:
    return f"""
Subject: {key.subject}
Topic: {key.topic}
Subtopic: {key.subtopic}

Previous Q&A:
{context}

New Question: {question}

Please provide a concise answer to the new question, taking into account the context of the previous questions and answers.
"""


# ==================== Resolver ====================

class ContentResolver:
    """
    Orchestrates the text and video providers behind a shared cache.

    Args:
        text_service: object with complete(prompt_or_messages) -> str
        video_service: object with search(query, embeddable, max_results) -> Optional[str]
        cache: TTLCache shared across requests
        catalog: immutable subject -> topics mapping
        max_history_turns: most recent Q/A turns sent as context (None/0 = all)
    """

    SUBTOPIC_COUNT = 5

    def __init__(
        self,
        text_service,
        video_service,
        cache: TTLCache,
        catalog: Mapping[str, Tuple[str, ...]],
        max_history_turns: Optional[int] = None
    ):
        self.text_service = text_service
        self.video_service = video_service
        self.cache = cache
        self.catalog = catalog
        self.max_history_turns = max_history_turns
        self._flights = SingleFlight()

    def subjects(self) -> Mapping[str, Tuple[str, ...]]:
        return self.catalog

    def resolve_subtopics(self, subject: str, topic: str) -> List[str]:
        """Return subtopics for a topic, generating and caching them on a miss."""
        cache_key = subtopics_cache_key(subject, topic)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        def generate() -> Tuple[str, ...]:
            # Another flight may have filled the cache since the first check
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

            print(f"[Resolver] Generating subtopics for {subject} / {topic}")
            raw = self.text_service.complete(subtopics_prompt(subject, topic, self.SUBTOPIC_COUNT))
            subtopics = tuple(extract_subtopics(raw))
            self.cache.set(cache_key, subtopics)
            return subtopics

        return list(self._flights.do(cache_key, generate))

    def resolve_explanation(self, key: LearningPathKey) -> ExplanationResult:
        """
        Return an explanation and video link for a learning path.

        The text and video requests run concurrently. The explanation is
        required; a failed or empty video search yields video_url=None.
        """
        cache_key = explanation_cache_key(key)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        def generate() -> ExplanationResult:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

            start = time.time()
            with ThreadPoolExecutor(max_workers=2) as executor:
                text_future = executor.submit(self.text_service.complete, explanation_prompt(key))
                video_future = executor.submit(
                    self.video_service.search, video_query(key), embeddable=True, max_results=1
                )

                try:
                    video_id = video_future.result()
                except Exception as e:
                    print(f"[Resolver] Video search failed, continuing without video: {e}")
                    video_id = None

                explanation = text_future.result()

            if not explanation or not explanation.strip():
                raise ContentGenerationFailed("Empty explanation received from model")

            result = ExplanationResult(
                explanation=explanation,
                video_url=embed_url(video_id) if video_id else None
            )
            print(f"[Resolver] Explanation for {key.subtopic!r} ready in {time.time() - start:.2f}s "
                  f"(video: {'yes' if result.video_url else 'no'})")
            self.cache.set(cache_key, result)
            return result

        return self._flights.do(cache_key, generate)

    def answer_question(
        self,
        key: LearningPathKey,
        question: str,
        history: Sequence[Any] = ()
    ) -> AnswerResult:
        """Answer a follow-up question using prior Q/A as context. Never cached."""
        context = build_context(trim_history(history, self.max_history_turns))
        messages = [
            {"role": "system", "content": TUTOR_SYSTEM_PROMPT},
            {"role": "user", "content": question_prompt(key, context, question)},
        ]
        answer = self.text_service.complete(messages)
        if not answer or not answer.strip():
            raise ContentGenerationFailed("Empty answer received from model")
        return AnswerResult(answer=answer)
