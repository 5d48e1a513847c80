import json
import logging
import re
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import openai
from openai import OpenAI

import config
from lyrics import Lyric, LyricEntry, with_enrichment


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You convert Chinese worship lyrics for projection slides. "
    "Convert Traditional Chinese to Simplified Chinese and generate Hanyu Pinyin "
    "with tone marks. The character 祢 must become \"Nǐ\" (capital N); all other "
    "pinyin must be completely lowercase with tone marks. Return only valid JSON."
)

RATE_LIMIT_MARKERS = ('429', 'rate limit', 'quota', 'RESOURCE_EXHAUSTED', 'ResourceExhausted')


class MalformedResponseError(ValueError):
    """The model answered, but no usable JSON could be recovered."""


def fallback_result(text: str) -> Dict[str, str]:
    return {"simplified": text, "pinyin": ""}


def extract_json(response_text: str) -> Any:
    """
    Parse JSON out of a model response.

    Handles markdown code fences and extra prose around the payload by
    searching for the outermost JSON array or object.

    Raises:
        MalformedResponseError: if nothing parseable is found
    """
    if not response_text or not response_text.strip():
        raise MalformedResponseError("Empty response from API")

    text = response_text.strip()

    # Extract JSON from response (handle markdown code blocks and extra text)
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for pattern in (r'\[.*\]', r'\{.*\}'):
        match = re.search(pattern, text, re.DOTALL)
        if not match:
            continue
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            continue

    raise MalformedResponseError(f"No valid JSON in API response: {text[:200]}")


# ============================================================================
# RETRY POLICY & RATE LIMITING
# ============================================================================

class RetryPolicy:
    """
    Bounded retry with increasing backoff.

    Rate-limit errors wait longer (7s + 1s per attempt) than other transient
    failures (1s per attempt). Credential, bad-request and malformed-response
    errors are not retried.
    """

    FATAL_ERRORS = (
        MalformedResponseError,
        openai.AuthenticationError,
        openai.PermissionDeniedError,
        openai.BadRequestError,
        openai.NotFoundError,
    )

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0,
                 rate_limit_delay: float = 7.0, sleep: Callable[[float], None] = time.sleep):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.rate_limit_delay = rate_limit_delay
        self.sleep = sleep

    def is_rate_limit(self, error: Exception) -> bool:
        if isinstance(error, openai.RateLimitError):
            return True
        message = str(error)
        return any(marker.lower() in message.lower() for marker in RATE_LIMIT_MARKERS)

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, self.FATAL_ERRORS):
            return False
        return True

    def delay_for(self, attempt: int, error: Exception) -> float:
        if self.is_rate_limit(error):
            return self.rate_limit_delay + attempt * self.base_delay
        return self.base_delay * attempt

    def run(self, func: Callable[[], Any]) -> Any:
        """Call func until it succeeds or attempts are exhausted; re-raises the last error."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                logger.warning(f"Enrichment API error (attempt {attempt}/{self.max_attempts}): {e}")
                if attempt == self.max_attempts:
                    raise
                wait = self.delay_for(attempt, e)
                if self.is_rate_limit(e):
                    logger.info(f"Rate limited, waiting {wait:.1f}s before retry...")
                self.sleep(wait)


class SlidingWindowRateLimiter:
    """
    Allow at most max_calls per rolling window; acquire() blocks until a slot
    frees up. Safe to share between request threads.
    """

    def __init__(self, max_calls: int, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.clock = clock
        self.sleep = sleep
        self.calls = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float):
        while self.calls and now - self.calls[0] >= self.window_seconds:
            self.calls.popleft()

    def acquire(self):
        # Waiting callers queue on the lock, so slots are handed out in order
        with self._lock:
            now = self.clock()
            self._evict(now)
            if len(self.calls) >= self.max_calls:
                wait = self.calls[0] + self.window_seconds - now
                if wait > 0:
                    logger.info(f"Rate limiter window full, waiting {wait:.1f}s")
                    self.sleep(wait)
                now = self.clock()
                self._evict(now)
                # A clock that did not advance still frees the oldest slot
                if len(self.calls) >= self.max_calls:
                    self.calls.popleft()
            self.calls.append(now)


# ============================================================================
# ENRICHER
# ============================================================================

def result_id(item: Any) -> Optional[int]:
    """Index a batch item claims to answer: an int or a numeric string id."""
    if not isinstance(item, dict):
        return None
    value = item.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class LyricsEnricher:
    """
    Adds Simplified Chinese and tone-marked pinyin to lyric lines using an
    OpenAI chat model.

    Failures never propagate: a line that cannot be enriched keeps its
    original text as `simplified` and gets empty `pinyin`. Callers that want
    to know why pass an `errors` list, which collects one message per
    failure; the enricher itself keeps no per-request state, so one instance
    can serve concurrent requests.
    """

    def __init__(self, api_key: str = None, model: str = None, client: Any = None,
                 batch_size: int = None, retry_policy: RetryPolicy = None,
                 rate_limiter: SlidingWindowRateLimiter = None):
        """
        Initialize the enricher.

        Args:
            api_key: OpenAI API key (if None, read from the environment)
            model: Chat model name (default: OPENAI_MODEL)
            client: Pre-built client exposing chat.completions.create (used instead of OpenAI)
            batch_size: Lines per API call (default: ENRICHMENT_BATCH_SIZE)
            retry_policy: Retry/backoff policy for API calls
            rate_limiter: Client-side limiter applied before every API call
        """
        self.api_key = api_key or config.OPENAI_API_KEY
        self.model = model or config.OPENAI_MODEL
        self.batch_size = batch_size or config.ENRICHMENT_BATCH_SIZE

        if client is not None:
            self.client = client
        elif self.api_key:
            self.client = OpenAI(api_key=self.api_key)
        else:
            self.client = None
            logger.warning("OPENAI_API_KEY not configured; lyrics will not be enriched")

        self.retry_policy = retry_policy or RetryPolicy(max_attempts=config.ENRICHMENT_MAX_ATTEMPTS)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(config.ENRICHMENT_CALLS_PER_MINUTE)

        # Statistics
        self.stats = {
            "api_calls": 0,
            "total_tokens_used": 0,
            "lines_enriched": 0,
            "lines_fallback": 0,
        }
        self._stats_lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def _count(self, key: str, amount: int = 1):
        with self._stats_lock:
            self.stats[key] += amount

    # ------------------------------------------------------------------
    # API access
    # ------------------------------------------------------------------

    def _complete(self, prompt: str) -> str:
        self.rate_limiter.acquire()
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
            max_tokens=4096,
        )

        self._count("api_calls")
        usage = getattr(response, "usage", None)
        if usage is not None and getattr(usage, "total_tokens", None):
            self._count("total_tokens_used", usage.total_tokens)

        return (response.choices[0].message.content or "").strip()

    def _request_json(self, prompt: str) -> Any:
        return self.retry_policy.run(lambda: extract_json(self._complete(prompt)))

    @staticmethod
    def _record_failure(errors: Optional[List[str]], message: str):
        logger.warning(message)
        if errors is not None:
            errors.append(message)

    def _normalize(self, item: Any, original: str) -> Dict[str, str]:
        if not isinstance(item, dict):
            self._count("lines_fallback")
            return fallback_result(original)

        simplified = item.get("simplified")
        pinyin = item.get("pinyin")
        if not isinstance(simplified, str) or not isinstance(pinyin, str) or not (simplified or pinyin):
            self._count("lines_fallback")
            return fallback_result(original)

        self._count("lines_enriched")
        return {"simplified": simplified or original, "pinyin": pinyin}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def enrich_line(self, text: str, errors: List[str] = None) -> Dict[str, str]:
        """
        Enrich a single lyric line.

        Args:
            text: Original lyric text
            errors: Optional list that receives a message if the line falls back

        Returns:
            Dict with "simplified" and "pinyin"
        """
        if not text or not text.strip():
            return fallback_result(text or '')

        if not self.is_configured:
            self._count("lines_fallback")
            if errors is not None:
                errors.append("OPENAI_API_KEY is not configured")
            return fallback_result(text)

        prompt = (
            "Process this Chinese text.\n"
            "Return ONLY a JSON object with this format: "
            "{\"simplified\": \"...\", \"pinyin\": \"...\"}\n"
            "No explanations, no markdown, just the JSON object.\n\n"
            f"Text: {text}"
        )

        try:
            parsed = self._request_json(prompt)
        except Exception as e:
            self._count("lines_fallback")
            self._record_failure(errors, f"Failed to enrich line '{text}': {e}")
            return fallback_result(text)

        if isinstance(parsed, list) and parsed:
            parsed = parsed[0]
        if isinstance(parsed, dict) and isinstance(parsed.get("results"), list) and parsed["results"]:
            parsed = parsed["results"][0]

        return self._normalize(parsed, text)

    def enrich_batch(self, texts: List[str], errors: List[str] = None) -> List[Dict[str, str]]:
        """
        Enrich several lines with one API call.

        The result always has the same length and order as `texts`. Items are
        matched to lines by their "id" (int or numeric string); only a
        response without any ids is matched by position. Items the model
        omitted or misformatted get the fallback value for that index only.
        If the whole call fails, lines are retried one by one.

        Args:
            texts: Original lyric lines
            errors: Optional list that receives one message per failure

        Returns:
            List of {"simplified", "pinyin"} dicts
        """
        if not texts:
            return []

        if len(texts) == 1:
            return [self.enrich_line(texts[0], errors)]

        if not self.is_configured:
            self._count("lines_fallback", len(texts))
            if errors is not None:
                errors.append("OPENAI_API_KEY is not configured")
            return [fallback_result(text) for text in texts]

        texts_json = json.dumps(
            [{"id": idx, "text": text} for idx, text in enumerate(texts)],
            ensure_ascii=False,
        )
        prompt = f"""Process these {len(texts)} Chinese text lines.

CRITICAL RULES:
1. Return ONLY a JSON array: [{{"id": 0, "simplified": "...", "pinyin": "..."}}, ...]
2. Keep the same "id" values
3. The array must have exactly {len(texts)} items, one for each input line in order
4. No explanations, no markdown, just the JSON array

Input JSON:
{texts_json}

Output (JSON array only):"""

        try:
            parsed = self._request_json(prompt)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            self._count("lines_fallback", len(texts))
            self._record_failure(errors, f"Enrichment API rejected credentials: {e}")
            return [fallback_result(text) for text in texts]
        except Exception as e:
            logger.warning(f"Batch enrichment failed ({e}); falling back to one-by-one")
            return self.enrich_one_by_one(texts, errors)

        if isinstance(parsed, dict) and isinstance(parsed.get("results"), list):
            parsed = parsed["results"]

        if not isinstance(parsed, list):
            logger.warning("Invalid response format: expected array; falling back to one-by-one")
            return self.enrich_one_by_one(texts, errors)

        ids = [result_id(item) for item in parsed]
        by_id = {}
        if any(idx is not None for idx in ids):
            for idx, item in zip(ids, parsed):
                if idx is not None and idx not in by_id:
                    by_id[idx] = item

        results = []
        for idx, text in enumerate(texts):
            if by_id:
                item = by_id.get(idx)
            else:
                item = parsed[idx] if idx < len(parsed) else None
            if item is None:
                self._record_failure(errors, f"Missing enrichment result for line {idx + 1}")
            results.append(self._normalize(item, text))

        return results

    def enrich_one_by_one(self, texts: List[str], errors: List[str] = None) -> List[Dict[str, str]]:
        """Fallback method: enrich texts one by one."""
        return [self.enrich_line(text, errors) for text in texts]

    def enrich_entries(self, entries: List[LyricEntry],
                       progress_callback: Callable[[int, int], None] = None,
                       errors: List[str] = None) -> List[LyricEntry]:
        """
        Enrich every lyric entry of a parsed preview, keeping section markers
        and input order intact.

        Args:
            entries: Parsed entries (sections and lyrics)
            progress_callback: Optional callable(done, total) after each batch
            errors: Optional list that receives one message per failure

        Returns:
            New list of entries with lyric lines enriched
        """
        positions = [idx for idx, entry in enumerate(entries) if isinstance(entry, Lyric)]
        total = len(positions)
        enriched = list(entries)

        for start in range(0, total, self.batch_size):
            chunk = positions[start:start + self.batch_size]
            results = self.enrich_batch([entries[idx].original for idx in chunk], errors)
            for idx, result in zip(chunk, results):
                enriched[idx] = with_enrichment(entries[idx], result)
            if progress_callback:
                progress_callback(min(start + len(chunk), total), total)

        return enriched

    def process_request(self, body: Any) -> Dict[str, Any]:
        """
        Handle an enrichment request in the collaborator contract.

        Request is {"text": str} or {"texts": [str, ...]}; the response mirrors
        it with {"simplified", "pinyin"} or {"results": [...]}, plus an "error"
        field whenever some line fell back.
        """
        body = body if isinstance(body, dict) else {}

        is_batch = isinstance(body.get("texts"), list) and len(body["texts"]) > 0
        if is_batch:
            texts = [text if isinstance(text, str) else '' for text in body["texts"]]
        elif isinstance(body.get("text"), str) and body["text"]:
            texts = [body["text"]]
        else:
            texts = []

        if not texts:
            return {"error": "Text is required", "simplified": "", "pinyin": ""}

        errors: List[str] = []
        try:
            if is_batch:
                payload = {"results": self.enrich_batch(texts, errors)}
            else:
                payload = dict(self.enrich_line(texts[0], errors))
        except Exception as e:
            logger.exception("Unexpected error processing lyrics")
            errors.append(f"Failed to process lyrics: {e}")
            if is_batch:
                payload = {"results": [fallback_result(text) for text in texts]}
            else:
                payload = fallback_result(texts[0])

        if errors:
            payload["error"] = errors[-1]
        return payload
