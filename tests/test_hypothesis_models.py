"""
Hypothesis Property-Based Tests for quota accounting and secret handling.
"""

import asyncio
import math
import string

from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import FakeClock, InMemoryPersistentStore
from tokengate.models.api import AdmissionDecision
from tokengate.services.credential_store import redact_secret
from tokengate.services.provider_policy import ProviderPolicyTable
from tokengate.services.quota_ledger import QuotaLedger, estimate_tokens

# ============================================================================
# Hypothesis Strategies
# ============================================================================

providers = st.sampled_from(["github", "openai", "gemini"])
deltas = st.tuples(st.integers(0, 50), st.integers(0, 5_000))
SECRET_ALPHABET = string.ascii_letters + string.digits + "-_"
limit_values = st.one_of(
    st.none(), st.booleans(), st.integers(-1_000, 1_000_000), st.text(max_size=5), st.floats()
)


def _ledger(request_limit: int = 1_000_000, token_limit: int = 10_000_000) -> QuotaLedger:
    policies = ProviderPolicyTable.default()
    for provider in policies.providers():
        policies = policies.with_overrides(provider, request_limit, token_limit)
    return QuotaLedger(InMemoryPersistentStore(), FakeClock(), policies)


class TestQuotaProperties:
    """Invariants of QuotaLedger."""

    @given(provider=providers, commits=st.lists(deltas, max_size=20))
    @settings(max_examples=50, deadline=None)
    def test_commits_sum(self, provider, commits):
        async def run():
            ledger = _ledger()
            for requests, tokens in commits:
                await ledger.commit(provider, requests, tokens)
            return await ledger.current_usage(provider)

        usage = asyncio.run(run())
        assert usage.requests_used == sum(r for r, _ in commits)
        assert usage.tokens_used == sum(t for _, t in commits)

    @given(limit=st.integers(0, 30), used=st.integers(0, 40))
    @settings(max_examples=50, deadline=None)
    def test_admission_matches_request_limit(self, limit, used):
        async def run():
            ledger = _ledger(request_limit=limit)
            await ledger.commit("gemini", used, 0)
            return await ledger.check_and_reserve("gemini", 0), await ledger.remaining("gemini")

        decision, remaining = asyncio.run(run())
        if used >= limit:
            assert decision == AdmissionDecision.REQUESTS_EXCEEDED
            assert remaining.requests == 0
        else:
            assert decision == AdmissionDecision.ALLOWED
            assert remaining.requests == limit - used

    @given(text=st.text(max_size=2_000))
    def test_estimate_tokens_is_ceil_quarter(self, text):
        assert estimate_tokens(text) == math.ceil(len(text) / 4)


class TestSecretProperties:
    """Invariants of secret redaction and policy overrides."""

    @given(secret=st.text(alphabet=SECRET_ALPHABET, min_size=13, max_size=200))
    def test_long_secret_never_fully_revealed(self, secret):
        redacted = redact_secret(secret)
        assert secret not in redacted
        assert redacted.startswith(secret[:8])
        assert redacted.endswith(secret[-4:])

    @given(provider=providers, requests=limit_values, tokens=limit_values)
    def test_overrides_never_produce_invalid_policy(self, provider, requests, tokens):
        policy = ProviderPolicyTable.default().with_overrides(provider, requests, tokens).get(
            provider
        )
        assert isinstance(policy.daily_request_limit, int)
        assert policy.daily_request_limit >= 0
        assert policy.daily_token_limit >= 0
