import pytest

from enricher import LyricsEnricher, RetryPolicy, SlidingWindowRateLimiter
from tests.helpers import LYRIC_TOKENS, TITLE_TOKENS, FakeClient, build_template, echo_handler


@pytest.fixture
def lyric_template():
    return build_template([LYRIC_TOKENS])


@pytest.fixture
def title_lyric_template():
    return build_template([TITLE_TOKENS, LYRIC_TOKENS])


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_enricher(sleeps):
    """Enricher wired to a FakeClient; every backoff wait is recorded in `sleeps`."""
    def factory(handler=echo_handler, batch_size=10, max_attempts=3):
        client = FakeClient(handler)
        enricher = LyricsEnricher(
            client=client,
            batch_size=batch_size,
            retry_policy=RetryPolicy(max_attempts=max_attempts, sleep=sleeps.append),
            rate_limiter=SlidingWindowRateLimiter(1000, sleep=sleeps.append),
        )
        enricher.fake = client
        return enricher
    return factory
