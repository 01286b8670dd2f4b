from __future__ import annotations
import pytest

from loghound.search.governor import RateGovernor
from loghound.search.job import JobPolicy
from loghound.utils.retry_backoff import RetryConfig
from tests.fakes import ScriptedBackend


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def fast_policy() -> JobPolicy:
    """Millisecond-scale policy so lifecycle tests run quickly."""
    return JobPolicy(
        timeout=2.0,
        poll_initial=0.001,
        poll_max=0.005,
        poll_multiplier=2.0,
        cancel_timeout=0.5,
        retry=RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.005, jitter=False),
    )


@pytest.fixture
def governor() -> RateGovernor:
    return RateGovernor(capacity=5, min_interval=0.0)
