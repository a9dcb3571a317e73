"""
Unit tests for configuration loading and validation.

Tests defaults, overrides and strict rejection of invalid credit configs.
"""

import os
import tempfile

import pytest
import yaml

from tale_forge_credits.config.loader import (
    ChargeRetryConfig,
    CreditConfig,
    CreditPack,
    VideoTier,
    default_credit_config,
    load_credit_config,
)
from tale_forge_credits.storage.models import OperationKind, SubscriptionTier


class TestDefaultConfig:
    """Test the built-in configuration."""

    def test_default_values(self):
        config = default_credit_config()
        assert config.welcome_bonus == 100
        assert config.usage_period_hours == 24
        assert config.pricing.audio_words_per_credit == 100
        assert config.pricing.video_above_max_credits == 12
        assert config.subscription_required == frozenset({OperationKind.AUDIO})

    def test_free_tier_chapter_limit(self):
        config = default_credit_config()
        assert config.daily_limit(SubscriptionTier.FREE, OperationKind.STORY_SEGMENT) == 4
        assert config.daily_limit(SubscriptionTier.PREMIUM, OperationKind.STORY_SEGMENT) is None
        assert config.daily_limit(SubscriptionTier.FREE, OperationKind.IMAGE) is None

    def test_subscription_packs_carry_tier(self):
        packs = default_credit_config().credit_packs
        assert packs["subscription_starter"].tier == SubscriptionTier.STARTER
        assert packs["pack_small"].tier is None


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "credits.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_full_config_loads_correctly(self):
        config_data = {
            "pricing": {
                "fixed": {"image": 1, "story_segment": 2},
                "audio": {"words_per_credit": 50},
                "video": {
                    "tiers": [
                        {"max_seconds": 4, "credits": 6},
                        {"max_seconds": 8, "credits": 10},
                    ],
                    "above_max_credits": 20
                }
            },
            "daily_limits": {"free": {"story_segment": 2}, "starter": {"video": 5}},
            "subscription_required": ["video"],
            "welcome_bonus": 25,
            "usage_period_hours": 12,
            "charge_retry": {"attempts": 5, "base_delay": 0.1, "max_delay": 1.0},
            "credit_packs": {
                "price_a": {"credits": 40},
                "price_b": {"credits": 200, "tier": "premium"}
            }
        }

        config = load_credit_config(self._write_config(config_data))

        assert isinstance(config, CreditConfig)
        assert config.pricing.fixed_costs[OperationKind.IMAGE] == 1
        assert config.pricing.fixed_costs[OperationKind.STORY_SEGMENT] == 2
        assert config.pricing.fixed_costs[OperationKind.STORY_TEXT] == 0
        assert config.pricing.audio_words_per_credit == 50
        assert config.pricing.video_tiers == (
            VideoTier(max_seconds=4.0, credits=6),
            VideoTier(max_seconds=8.0, credits=10),
        )
        assert config.pricing.video_above_max_credits == 20
        assert config.daily_limit(SubscriptionTier.FREE, OperationKind.STORY_SEGMENT) == 2
        assert config.daily_limit(SubscriptionTier.STARTER, OperationKind.VIDEO) == 5
        assert config.subscription_required == frozenset({OperationKind.VIDEO})
        assert config.welcome_bonus == 25
        assert config.usage_period_hours == 12
        assert config.charge_retry == ChargeRetryConfig(attempts=5, base_delay=0.1, max_delay=1.0)
        assert config.credit_packs == {
            "price_a": CreditPack(credits=40),
            "price_b": CreditPack(credits=200, tier=SubscriptionTier.PREMIUM)
        }

    def test_partial_config_keeps_defaults(self):
        config = load_credit_config(self._write_config({"welcome_bonus": 0}))
        defaults = default_credit_config()
        assert config.welcome_bonus == 0
        assert config.pricing == defaults.pricing
        assert config.daily_limits == defaults.daily_limits
        assert config.credit_packs == defaults.credit_packs

    def test_empty_gated_list_disables_gating(self):
        config = load_credit_config(self._write_config({"subscription_required": []}))
        assert config.subscription_required == frozenset()

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Credit config file not found"):
            load_credit_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_credit_config(path)

    def test_invalid_yaml_raises_error(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("pricing: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_credit_config(path)

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in configuration"):
            load_credit_config(self._write_config({"welcome_bonsu": 10}))

    def test_unknown_pricing_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in pricing.audio"):
            load_credit_config(self._write_config({"pricing": {"audio": {"per_word": 1}}}))

    def test_unknown_operation_rejected(self):
        with pytest.raises(ValueError, match="Unknown operation 'hologram'"):
            load_credit_config(self._write_config({"subscription_required": ["hologram"]}))

    def test_variable_operation_not_allowed_in_fixed(self):
        with pytest.raises(ValueError, match="not a fixed-cost operation"):
            load_credit_config(self._write_config({"pricing": {"fixed": {"audio": 1}}}))

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError, match="Unknown tier 'gold'"):
            load_credit_config(self._write_config({"daily_limits": {"gold": {"image": 1}}}))

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            load_credit_config(self._write_config({"pricing": {"fixed": {"image": -1}}}))

    def test_non_integer_cost_rejected(self):
        with pytest.raises(ValueError, match="must be an integer"):
            load_credit_config(self._write_config({"pricing": {"fixed": {"image": 1.5}}}))

    def test_unordered_video_tiers_rejected(self):
        config_data = {"pricing": {"video": {"tiers": [
            {"max_seconds": 5, "credits": 8},
            {"max_seconds": 3, "credits": 5},
        ]}}}
        with pytest.raises(ValueError, match="strictly increasing"):
            load_credit_config(self._write_config(config_data))

    def test_credit_pack_requires_credits(self):
        with pytest.raises(ValueError, match="Missing required 'credits'"):
            load_credit_config(self._write_config({"credit_packs": {"price_a": {"tier": "starter"}}}))

    def test_zero_retry_attempts_rejected(self):
        with pytest.raises(ValueError, match="attempts must be >= 1"):
            load_credit_config(self._write_config({"charge_retry": {"attempts": 0}}))
