"""
Tests for ContentResolver using in-process fake providers.
"""
import threading
import time

import pytest

from cache import TTLCache
from content import (
    ContentGenerationFailed,
    ContentResolver,
    ExplanationResult,
    InvalidProviderOutput,
    LearningPathKey,
    ProviderUnavailable,
    QuestionHistoryItem,
    TUTOR_SYSTEM_PROMPT,
)
from settings import freeze_catalog, DEFAULT_SUBJECTS


class FakeTextService:
    """Returns canned text, optionally after a delay or by raising."""

    def __init__(self, response="", delay=0.0, error=None):
        self.response = response
        self.delay = delay
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, prompt):
        with self._lock:
            self.calls.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


class FakeVideoSearch:
    def __init__(self, video_id=None, delay=0.0, error=None):
        self.video_id = video_id
        self.delay = delay
        self.error = error
        self.calls = []

    def search(self, query, embeddable=True, max_results=1):
        self.calls.append((query, embeddable, max_results))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.video_id


KEY = LearningPathKey("Math", "Algebra", "Linear Equations")


def make_resolver(text=None, video=None, cache=None, max_history_turns=None):
    return ContentResolver(
        text_service=text if text is not None else FakeTextService(),
        video_service=video if video is not None else FakeVideoSearch(),
        cache=cache if cache is not None else TTLCache(),
        catalog=freeze_catalog(DEFAULT_SUBJECTS),
        max_history_turns=max_history_turns,
    )


class TestResolveSubtopics:
    """Test suite for resolve_subtopics"""

    def test_generates_and_caches(self):
        text = FakeTextService('["A", "B", "C", "D", "E"]')
        resolver = make_resolver(text=text)

        first = resolver.resolve_subtopics("Math", "Algebra")
        second = resolver.resolve_subtopics("Math", "Algebra")

        assert first == ["A", "B", "C", "D", "E"]
        assert second == first
        assert len(text.calls) == 1

    def test_prompt_asks_for_five_subtopics_as_json(self):
        text = FakeTextService('["A"]')
        make_resolver(text=text).resolve_subtopics("Science", "Physics")

        prompt = text.calls[0]
        assert "5 important subtopics for Physics in Science" in prompt
        assert "JSON array of strings" in prompt

    def test_fallback_parsing_result_is_cached(self):
        text = FakeTextService("1. Foo\n2. Bar\n\n3. Baz")
        resolver = make_resolver(text=text)
        assert resolver.resolve_subtopics("Math", "Algebra") == ["Foo", "Bar", "Baz"]

    def test_returned_list_is_a_copy(self):
        resolver = make_resolver(text=FakeTextService('["A", "B"]'))
        result = resolver.resolve_subtopics("Math", "Algebra")
        result.append("mutated")
        assert resolver.resolve_subtopics("Math", "Algebra") == ["A", "B"]

    def test_invalid_output_is_not_cached(self):
        cache = TTLCache()
        text = FakeTextService("")
        resolver = make_resolver(text=text, cache=cache)

        with pytest.raises(InvalidProviderOutput):
            resolver.resolve_subtopics("Math", "Algebra")
        assert len(cache) == 0

        # No retry happened, and the next request tries again
        assert len(text.calls) == 1
        with pytest.raises(InvalidProviderOutput):
            resolver.resolve_subtopics("Math", "Algebra")
        assert len(text.calls) == 2

    def test_provider_failure_propagates(self):
        cache = TTLCache()
        text = FakeTextService(error=ProviderUnavailable("connection reset"))
        resolver = make_resolver(text=text, cache=cache)

        with pytest.raises(ContentGenerationFailed):
            resolver.resolve_subtopics("Math", "Algebra")
        assert len(cache) == 0

    def test_concurrent_misses_share_one_provider_call(self):
        text = FakeTextService('["A", "B"]', delay=0.3)
        resolver = make_resolver(text=text)
        barrier = threading.Barrier(4)
        results = []

        def worker():
            barrier.wait()
            results.append(resolver.resolve_subtopics("Math", "Algebra"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(text.calls) == 1
        assert results == [["A", "B"]] * 4


class TestResolveExplanation:
    """Test suite for resolve_explanation"""

    def test_returns_explanation_and_embed_url(self):
        resolver = make_resolver(
            text=FakeTextService("Linear equations are..."),
            video=FakeVideoSearch("vid123"),
        )
        result = resolver.resolve_explanation(KEY)

        assert result == ExplanationResult(
            explanation="Linear equations are...",
            video_url="https://www.youtube.com/embed/vid123",
        )
        assert result.to_dict() == {
            "explanation": "Linear equations are...",
            "videoUrl": "https://www.youtube.com/embed/vid123",
        }

    def test_prompt_and_video_query(self):
        text = FakeTextService("text")
        video = FakeVideoSearch("vid")
        make_resolver(text=text, video=video).resolve_explanation(KEY)

        assert text.calls == [
            "Explain the subtopic 'Linear Equations' within the topic 'Algebra' "
            "in the subject 'Math' for a student."
        ]
        assert video.calls == [("Math Algebra Linear Equations education", True, 1)]

    def test_idempotent_with_single_provider_call(self):
        text = FakeTextService("text")
        video = FakeVideoSearch("vid")
        resolver = make_resolver(text=text, video=video)

        first = resolver.resolve_explanation(KEY)
        second = resolver.resolve_explanation(KEY)

        assert first == second
        assert len(text.calls) == 1
        assert len(video.calls) == 1

    def test_no_video_result_is_success(self):
        resolver = make_resolver(text=FakeTextService("text"), video=FakeVideoSearch(None))
        result = resolver.resolve_explanation(KEY)
        assert result.explanation == "text"
        assert result.video_url is None

    def test_video_failure_degrades_gracefully(self):
        cache = TTLCache()
        resolver = make_resolver(
            text=FakeTextService("text"),
            video=FakeVideoSearch(error=ProviderUnavailable("quota exceeded")),
            cache=cache,
        )
        result = resolver.resolve_explanation(KEY)
        assert result.video_url is None
        assert len(cache) == 1

    def test_text_failure_fails_and_caches_nothing(self):
        cache = TTLCache()
        resolver = make_resolver(
            text=FakeTextService(error=ProviderUnavailable("timeout")),
            video=FakeVideoSearch("vid"),
            cache=cache,
        )
        with pytest.raises(ProviderUnavailable):
            resolver.resolve_explanation(KEY)
        assert len(cache) == 0

    def test_empty_text_fails(self):
        cache = TTLCache()
        resolver = make_resolver(text=FakeTextService("   "), cache=cache)
        with pytest.raises(ContentGenerationFailed):
            resolver.resolve_explanation(KEY)
        assert len(cache) == 0

    def test_provider_calls_run_concurrently(self):
        """Latency is bounded by the slower provider, not the sum"""
        resolver = make_resolver(
            text=FakeTextService("text", delay=0.4),
            video=FakeVideoSearch("vid", delay=0.4),
        )
        start = time.monotonic()
        resolver.resolve_explanation(KEY)
        elapsed = time.monotonic() - start

        assert elapsed < 0.7

    def test_cache_namespaces_are_isolated(self):
        text = FakeTextService('["A", "B"]')
        video = FakeVideoSearch("vid")
        resolver = make_resolver(text=text, video=video)

        resolver.resolve_subtopics("Math", "Algebra")
        resolver.resolve_explanation(KEY)

        # The explanation lookup was not satisfied by the subtopics entry
        assert len(text.calls) == 2
        assert len(video.calls) == 1

    def test_expired_entry_is_regenerated(self):
        class Clock:
            now = 0.0

            def __call__(self):
                return self.now

        clock = Clock()
        text = FakeTextService("text")
        resolver = make_resolver(text=text, cache=TTLCache(default_ttl=3600, clock=clock))

        resolver.resolve_explanation(KEY)
        clock.now = 3601
        resolver.resolve_explanation(KEY)
        assert len(text.calls) == 2


class TestAnswerQuestion:
    """Test suite for answer_question"""

    def test_builds_tutor_prompt_with_context(self):
        text = FakeTextService("x is 3")
        resolver = make_resolver(text=text)
        history = [
            QuestionHistoryItem("Q1", "A1"),
            QuestionHistoryItem("Q2", "A2"),
        ]

        result = resolver.answer_question(KEY, "What is x?", history)

        assert result.answer == "x is 3"
        assert result.to_dict() == {"answer": "x is 3"}

        messages = text.calls[0]
        assert messages[0] == {"role": "system", "content": TUTOR_SYSTEM_PROMPT}
        user_prompt = messages[1]["content"]
        assert messages[1]["role"] == "user"
        assert "Subject: Math" in user_prompt
        assert "Topic: Algebra" in user_prompt
        assert "Subtopic: Linear Equations" in user_prompt
        assert "Previous Q&A:\nQ: Q1\nA: A1\n\nQ: Q2\nA: A2" in user_prompt
        assert "New Question: What is x?" in user_prompt

    def test_answers_are_not_cached(self):
        cache = TTLCache()
        text = FakeTextService("answer")
        resolver = make_resolver(text=text, cache=cache)

        resolver.answer_question(KEY, "Why?", [])
        resolver.answer_question(KEY, "Why?", [])

        assert len(text.calls) == 2
        assert len(cache) == 0

    def test_history_is_not_mutated(self):
        resolver = make_resolver(text=FakeTextService("answer"))
        history = [QuestionHistoryItem("Q1", "A1")]
        resolver.answer_question(KEY, "Q2", history)
        assert history == [QuestionHistoryItem("Q1", "A1")]

    def test_history_trimmed_to_recent_turns(self):
        text = FakeTextService("answer")
        resolver = make_resolver(text=text, max_history_turns=2)
        history = [QuestionHistoryItem(f"Q{i}", f"A{i}") for i in range(1, 5)]

        resolver.answer_question(KEY, "Next?", history)

        user_prompt = text.calls[0][1]["content"]
        assert "Q: Q1" not in user_prompt
        assert "Q: Q2" not in user_prompt
        assert "Q: Q3\nA: A3\n\nQ: Q4\nA: A4" in user_prompt

    def test_provider_failure_propagates(self):
        resolver = make_resolver(text=FakeTextService(error=ProviderUnavailable("down")))
        with pytest.raises(ProviderUnavailable):
            resolver.answer_question(KEY, "Why?", [])

    def test_empty_answer_fails(self):
        resolver = make_resolver(text=FakeTextService(""))
        with pytest.raises(ContentGenerationFailed):
            resolver.answer_question(KEY, "Why?", [])


class TestSubjects:
    def test_catalog_is_read_only(self):
        resolver = make_resolver()
        subjects = resolver.subjects()
        assert subjects["Math"] == ("Algebra", "Geometry", "Calculus")
        with pytest.raises(TypeError):
            subjects["Art"] = ("Painting",)
