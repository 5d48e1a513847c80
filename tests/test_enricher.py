import json
import threading

import pytest

import config
from enricher import (
    LyricsEnricher,
    MalformedResponseError,
    RetryPolicy,
    SlidingWindowRateLimiter,
    extract_json,
    result_id,
)
from lyrics import Lyric, Section, parse_lyrics
from tests.helpers import echo_handler, echo_result, prompt_texts


def fails_on(bad_line, message="429 rate limit exceeded"):
    """Handler that errors whenever bad_line is part of the request."""
    def handler(prompt):
        if bad_line in prompt_texts(prompt):
            raise RuntimeError(message)
        return echo_handler(prompt)
    return handler


class TestExtractJson:

    def test_plain_json(self):
        assert extract_json('{"simplified": "主", "pinyin": "zhǔ"}') == {"simplified": "主", "pinyin": "zhǔ"}

    def test_fenced_json(self):
        text = '```json\n[{"id": 0, "simplified": "主", "pinyin": "zhǔ"}]\n```'
        assert extract_json(text) == [{"id": 0, "simplified": "主", "pinyin": "zhǔ"}]

    def test_json_inside_prose(self):
        text = 'Sure! Here it is: {"simplified": "爱", "pinyin": "ài"} Hope that helps.'
        assert extract_json(text) == {"simplified": "爱", "pinyin": "ài"}

    @pytest.mark.parametrize("text", ["", "   ", "no json at all", "{broken: json"])
    def test_unrecoverable(self, text):
        with pytest.raises(MalformedResponseError):
            extract_json(text)


class TestRetryPolicy:

    def test_rate_limit_waits_longer(self):
        policy = RetryPolicy()
        assert policy.delay_for(1, RuntimeError("429 Too Many Requests")) == 8.0
        assert policy.delay_for(2, RuntimeError("quota exceeded")) == 9.0
        assert policy.delay_for(2, RuntimeError("connection reset")) == 2.0

    def test_retries_then_succeeds(self):
        sleeps = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset by peer")
            return "ok"

        assert RetryPolicy(sleep=sleeps.append).run(flaky) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        sleeps = []

        def always_fails():
            raise RuntimeError("503 unavailable")

        with pytest.raises(RuntimeError):
            RetryPolicy(max_attempts=3, sleep=sleeps.append).run(always_fails)
        assert len(sleeps) == 2

    def test_malformed_response_is_not_retried(self):
        sleeps = []

        def malformed():
            raise MalformedResponseError("nope")

        with pytest.raises(MalformedResponseError):
            RetryPolicy(sleep=sleeps.append).run(malformed)
        assert sleeps == []


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.slept = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


def test_sliding_window_rate_limiter():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, window_seconds=60, clock=clock, sleep=clock.sleep)

    limiter.acquire()
    clock.now = 10
    limiter.acquire()
    clock.now = 20
    limiter.acquire()

    assert clock.slept == [40.0]

    # the call at t=10 leaves the window at t=70
    limiter.acquire()
    assert clock.slept == [40.0, 10.0]


class TestEnrichLine:

    def test_success(self, make_enricher):
        enricher = make_enricher()
        assert enricher.enrich_line("主祢") == echo_result("主祢")
        assert enricher.stats["api_calls"] == 1
        assert enricher.stats["total_tokens_used"] == 42

    def test_retry_on_rate_limit(self, make_enricher, sleeps):
        attempts = []

        def handler(prompt):
            attempts.append(prompt)
            if len(attempts) == 1:
                raise RuntimeError("429 rate limit")
            return echo_handler(prompt)

        enricher = make_enricher(handler)
        assert enricher.enrich_line("A") == echo_result("A")
        assert sleeps == [8.0]

    def test_exhausted_retries_fall_back(self, make_enricher, sleeps):
        enricher = make_enricher(fails_on("A"))
        errors = []
        assert enricher.enrich_line("A", errors) == {"simplified": "A", "pinyin": ""}
        assert len(enricher.fake.completions.prompts) == 3
        assert enricher.stats["lines_fallback"] == 1
        assert len(errors) == 1
        assert "'A'" in errors[0]

    def test_malformed_response_falls_back(self, make_enricher):
        enricher = make_enricher(lambda prompt: "I cannot help with that.")
        assert enricher.enrich_line("A") == {"simplified": "A", "pinyin": ""}

    def test_wrong_field_types_fall_back(self, make_enricher):
        enricher = make_enricher(lambda prompt: '{"simplified": 1, "pinyin": null}')
        assert enricher.enrich_line("A") == {"simplified": "A", "pinyin": ""}

    def test_blank_line_skips_api(self, make_enricher):
        enricher = make_enricher()
        assert enricher.enrich_line("  ") == {"simplified": "  ", "pinyin": ""}
        assert enricher.stats["api_calls"] == 0

    def test_unconfigured(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", None)
        enricher = LyricsEnricher()
        assert not enricher.is_configured
        assert enricher.enrich_line("A") == {"simplified": "A", "pinyin": ""}
        assert enricher.enrich_batch(["A", "B"]) == [
            {"simplified": "A", "pinyin": ""},
            {"simplified": "B", "pinyin": ""},
        ]


class TestEnrichBatch:

    def test_one_call_for_the_batch(self, make_enricher):
        enricher = make_enricher()
        texts = ["A", "B", "C"]
        assert enricher.enrich_batch(texts) == [echo_result(t) for t in texts]
        assert enricher.stats["api_calls"] == 1

    def test_missing_index_falls_back_alone(self, make_enricher):
        def handler(prompt):
            items = json.loads(echo_handler(prompt))
            return json.dumps([item for item in items if item["id"] != 1], ensure_ascii=False)

        enricher = make_enricher(handler)
        assert enricher.enrich_batch(["A", "B", "C"]) == [
            echo_result("A"),
            {"simplified": "B", "pinyin": ""},
            echo_result("C"),
        ]
        assert enricher.stats["api_calls"] == 1

    def test_misformatted_item_falls_back_alone(self, make_enricher):
        def handler(prompt):
            items = json.loads(echo_handler(prompt))
            items[0] = {"id": 0, "simplified": ["oops"], "pinyin": ""}
            return json.dumps(items, ensure_ascii=False)

        enricher = make_enricher(handler)
        results = enricher.enrich_batch(["A", "B"])
        assert results == [{"simplified": "A", "pinyin": ""}, echo_result("B")]

    def test_results_without_ids_map_by_position(self, make_enricher):
        def handler(prompt):
            return json.dumps({"results": [echo_result(t) for t in prompt_texts(prompt)[:2]]})

        enricher = make_enricher(handler)
        assert enricher.enrich_batch(["A", "B", "C"]) == [
            echo_result("A"),
            echo_result("B"),
            {"simplified": "C", "pinyin": ""},
        ]

    def test_string_ids_keep_lines_in_place(self, make_enricher):
        def handler(prompt):
            items = json.loads(echo_handler(prompt))
            return json.dumps(
                [dict(item, id=str(item["id"])) for item in items if item["id"] != 1],
                ensure_ascii=False,
            )

        enricher = make_enricher(handler)
        errors = []
        assert enricher.enrich_batch(["A", "B", "C"], errors) == [
            echo_result("A"),
            {"simplified": "B", "pinyin": ""},
            echo_result("C"),
        ]
        assert errors == ["Missing enrichment result for line 2"]

    def test_items_without_id_are_ignored_when_others_have_one(self, make_enricher):
        def handler(prompt):
            return json.dumps([
                echo_result("stray"),
                dict(id=1, **echo_result("B")),
            ], ensure_ascii=False)

        enricher = make_enricher(handler)
        assert enricher.enrich_batch(["A", "B"]) == [
            {"simplified": "A", "pinyin": ""},
            echo_result("B"),
        ]

    @pytest.mark.parametrize("item, expected", [
        ({"id": 3}, 3),
        ({"id": " 2 "}, 2),
        ({"id": "two"}, None),
        ({"id": True}, None),
        ({"id": -1}, -1),
        ({}, None),
        ("A", None),
    ])
    def test_result_id(self, item, expected):
        assert result_id(item) == expected

    def test_failed_batch_degrades_to_single_calls(self, make_enricher):
        def handler(prompt):
            if "Input JSON:" in prompt:
                return "not json"
            return echo_handler(prompt)

        enricher = make_enricher(handler)
        assert enricher.enrich_batch(["A", "B"]) == [echo_result("A"), echo_result("B")]
        assert enricher.stats["api_calls"] == 3

    def test_rate_limited_line_in_ten(self, make_enricher, sleeps):
        texts = [f"Line {i}" for i in range(1, 11)]
        enricher = make_enricher(fails_on("Line 4"))

        response = enricher.process_request({"texts": texts})

        results = response["results"]
        assert len(results) == 10
        for i, (text, result) in enumerate(zip(texts, results), 1):
            if i == 4:
                assert result == {"simplified": "Line 4", "pinyin": ""}
            else:
                assert result == echo_result(text)
        assert "error" in response
        assert sleeps == [8.0, 9.0, 8.0, 9.0]


class TestEnrichEntries:

    def test_sections_untouched_and_progress_reported(self, make_enricher):
        entries, _ = parse_lyrics("[Verse]\nA\nB\n[Chorus]\nC")
        progress = []

        enriched = make_enricher(batch_size=2).enrich_entries(
            entries, progress_callback=lambda done, total: progress.append((done, total))
        )

        assert enriched[0] == Section(label="[Verse]", raw_line="[Verse]")
        assert enriched[3] == Section(label="[Chorus]", raw_line="[Chorus]")
        assert enriched[4] == Lyric(section="[Chorus]", original="C", simplified="简C", pinyin="py C")
        assert progress == [(2, 3), (3, 3)]
        # input entries are left as parsed
        assert entries[1].pinyin == ""


class TestProcessRequest:

    def test_single_text(self, make_enricher):
        assert make_enricher().process_request({"text": "A"}) == echo_result("A")

    def test_batch(self, make_enricher):
        response = make_enricher().process_request({"texts": ["A", "B"]})
        assert response == {"results": [echo_result("A"), echo_result("B")]}

    @pytest.mark.parametrize("body", [None, {}, {"text": ""}, {"texts": []}, ["A"]])
    def test_text_required(self, make_enricher, body):
        assert make_enricher().process_request(body) == {
            "error": "Text is required",
            "simplified": "",
            "pinyin": "",
        }

    def test_failure_reports_error_with_fallback(self, make_enricher):
        response = make_enricher(fails_on("A", "500 internal")).process_request({"text": "A"})
        assert response["simplified"] == "A"
        assert response["pinyin"] == ""
        assert response["error"]

    def test_concurrent_requests_keep_their_own_errors(self, make_enricher):
        entered = threading.Event()
        release = threading.Event()

        def handler(prompt):
            text = prompt_texts(prompt)[0]
            if text == "slow-ok":
                entered.set()
                assert release.wait(5)
            elif text == "bad":
                raise RuntimeError("503 upstream down")
            return echo_handler(prompt)

        enricher = make_enricher(handler)
        responses = {}
        worker = threading.Thread(
            target=lambda: responses.update(slow=enricher.process_request({"text": "slow-ok"}))
        )
        worker.start()
        assert entered.wait(5)

        responses["bad"] = enricher.process_request({"text": "bad"})
        release.set()
        worker.join(5)

        assert responses["slow"] == echo_result("slow-ok")
        assert "503 upstream down" in responses["bad"]["error"]
        assert enricher.stats["lines_enriched"] == 1
        assert enricher.stats["lines_fallback"] == 1
