"""
Feature flag loading.
"""
import pytest

from eventscore.config.feature_flags import FeatureFlags, get_bool_env


class TestFeatureFlags:

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("Enabled", True), ("no", False), ("0", False),
    ])
    def test_get_bool_env(self, monkeypatch, raw, expected):
        monkeypatch.setenv("EVENTSCORE_TEST_FLAG", raw)
        assert get_bool_env("EVENTSCORE_TEST_FLAG") is expected

    def test_get_bool_env_default(self, monkeypatch):
        monkeypatch.delenv("EVENTSCORE_TEST_FLAG", raising=False)
        assert get_bool_env("EVENTSCORE_TEST_FLAG", True) is True

    def test_all_flags_lists_only_flags(self):
        flags = FeatureFlags.get_all_flags()
        assert set(flags) == {
            "FEATURE_BLOCK_DUPLICATE_OPEN_REQUESTS",
            "FEATURE_WINNERS_CERTIFIED_ONLY",
            "FEATURE_CERTIFY_SCORES_ON_JUDGE_STAGE",
            "FEATURE_ADMIN_RESET",
        }
        assert all(isinstance(v, bool) for v in flags.values())
