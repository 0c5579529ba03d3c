"""Unit tests for rate limiting value objects."""

import pytest

from tierguard.core.exceptions import MalformedPriorityError, UnknownTierError
from tierguard.domain.rate_limiting.value_objects import (
    AlgorithmKind,
    ClientTier,
    CounterKey,
    PriorityLevel,
)


class TestPriorityLevel:
    """Ordering and parsing of priority levels."""

    def test_levels_are_ordered(self):
        assert PriorityLevel.BACKGROUND < PriorityLevel.LOW < PriorityLevel.MEDIUM < PriorityLevel.HIGH

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (PriorityLevel.MEDIUM, PriorityLevel.MEDIUM),
            (3, PriorityLevel.HIGH),
            ("0", PriorityLevel.BACKGROUND),
            ("high", PriorityLevel.HIGH),
            (" Medium ", PriorityLevel.MEDIUM),
        ],
    )
    def test_from_value_accepts_members_numbers_and_names(self, raw, expected):
        assert PriorityLevel.from_value(raw) is expected

    @pytest.mark.parametrize("raw", ["urgent", 7, -1, True, 2.5, "", {"level": "high"}])
    def test_from_value_rejects_malformed_input(self, raw):
        with pytest.raises(MalformedPriorityError) as exc_info:
            PriorityLevel.from_value(raw)
        assert exc_info.value.code == "malformed_priority"

    @pytest.mark.parametrize("raw", [None, "urgent", 42, True, object()])
    def test_parse_defaults_to_low(self, raw):
        assert PriorityLevel.parse(raw) is PriorityLevel.LOW

    def test_parse_honours_explicit_default(self):
        assert PriorityLevel.parse("nonsense", default=PriorityLevel.BACKGROUND) is PriorityLevel.BACKGROUND

    def test_label(self):
        assert PriorityLevel.BACKGROUND.label == "background"


class TestClientTier:
    """Ordering and parsing of client tiers."""

    def test_trial_is_lowest(self):
        assert min(ClientTier) is ClientTier.TRIAL
        assert ClientTier.TRIAL < ClientTier.STANDARD < ClientTier.PREMIUM < ClientTier.CRITICAL

    def test_from_value_accepts_names(self):
        assert ClientTier.from_value("Premium") is ClientTier.PREMIUM

    def test_from_value_raises_unknown_tier(self):
        with pytest.raises(UnknownTierError) as exc_info:
            ClientTier.from_value("enterprise")
        assert exc_info.value.code == "unknown_tier"

    def test_parse_returns_none_for_unknown(self):
        assert ClientTier.parse("enterprise") is None
        assert ClientTier.parse(None) is None
        assert ClientTier.parse(1) is ClientTier.STANDARD


class TestAlgorithmKind:
    """Algorithm characteristics."""

    def test_values(self):
        assert AlgorithmKind("sliding_log") is AlgorithmKind.SLIDING_LOG

    def test_only_token_bucket_supports_burst(self):
        assert [kind for kind in AlgorithmKind if kind.supports_burst] == [AlgorithmKind.TOKEN_BUCKET]


class TestCounterKey:
    """Storage key rendering."""

    def test_storage_key_format(self):
        key = CounterKey("client-a", "/items", AlgorithmKind.FIXED_WINDOW)

        assert key.storage_key() == "tierguard:fixed_window:{client-a|%2Fitems}"
        assert key.for_bucket(42).storage_key("rl") == "rl:fixed_window:{client-a|%2Fitems}:42"

    def test_separators_in_identifiers_cannot_collide(self):
        first = CounterKey("a|b", "c", AlgorithmKind.SLIDING_LOG)
        second = CounterKey("a", "b|c", AlgorithmKind.SLIDING_LOG)

        assert first.storage_key() != second.storage_key()

    def test_buckets_share_hash_tag(self):
        key = CounterKey("client-a", "/items", AlgorithmKind.FIXED_WINDOW)

        assert key.for_bucket(1).scope == key.for_bucket(2).scope == key.scope

    def test_keys_are_hashable_values(self):
        first = CounterKey("client-a", "/items", AlgorithmKind.TOKEN_BUCKET)
        second = CounterKey("client-a", "/items", AlgorithmKind.TOKEN_BUCKET)

        assert first == second
        assert len({first, second}) == 1

    @pytest.mark.parametrize("client_id, endpoint", [("", "/items"), ("client-a", "")])
    def test_rejects_empty_components(self, client_id, endpoint):
        with pytest.raises(ValueError):
            CounterKey(client_id, endpoint, AlgorithmKind.FIXED_WINDOW)
