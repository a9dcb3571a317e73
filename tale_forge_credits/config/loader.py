"""
Configuration management and loading.

All credit costs, tier limits and payment mappings live in one configuration
object, loaded once at process start and passed to every component.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from tale_forge_credits.storage.models import (
    FIXED_OPERATION_KINDS,
    OperationKind,
    SubscriptionTier,
)


@dataclass(frozen=True)
class VideoTier:
    """Flat cost for videos up to ``max_seconds`` long."""
    max_seconds: float
    credits: int

    def __post_init__(self):
        if self.max_seconds <= 0:
            raise ValueError("video tier max_seconds must be > 0")
        if self.credits < 0:
            raise ValueError("video tier credits cannot be negative")


@dataclass(frozen=True)
class PricingConfig:
    """Credit prices for every operation kind."""
    fixed_costs: Dict[OperationKind, int]
    audio_words_per_credit: int
    video_tiers: Tuple[VideoTier, ...]
    video_above_max_credits: int

    def __post_init__(self):
        """Validate prices are non-negative and tiers ascend."""
        for kind, cost in self.fixed_costs.items():
            if kind not in FIXED_OPERATION_KINDS:
                raise ValueError(f"'{kind.value}' is not a fixed-cost operation")
            if cost < 0:
                raise ValueError(f"cost of '{kind.value}' cannot be negative")
        if self.audio_words_per_credit <= 0:
            raise ValueError("audio words_per_credit must be > 0")
        if not self.video_tiers:
            raise ValueError("at least one video tier is required")
        bounds = [tier.max_seconds for tier in self.video_tiers]
        if bounds != sorted(set(bounds)):
            raise ValueError("video tiers must have strictly increasing max_seconds")
        if self.video_above_max_credits < 0:
            raise ValueError("video above_max_credits cannot be negative")


@dataclass(frozen=True)
class ChargeRetryConfig:
    """Bounded retry policy for recording a charge after successful work."""
    attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("charge_retry attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("charge_retry delays cannot be negative")


@dataclass(frozen=True)
class CreditPack:
    """Credits granted for a payment price, and the tier it subscribes to."""
    credits: int
    tier: Optional[SubscriptionTier] = None

    def __post_init__(self):
        if self.credits <= 0:
            raise ValueError("credit pack credits must be > 0")


@dataclass(frozen=True)
class CreditConfig:
    """Complete credit engine configuration."""
    pricing: PricingConfig
    daily_limits: Dict[SubscriptionTier, Dict[OperationKind, int]]
    subscription_required: FrozenSet[OperationKind]
    welcome_bonus: int = 100
    usage_period_hours: int = 24
    charge_retry: ChargeRetryConfig = field(default_factory=ChargeRetryConfig)
    credit_packs: Dict[str, CreditPack] = field(default_factory=dict)

    def __post_init__(self):
        if self.welcome_bonus < 0:
            raise ValueError("welcome_bonus cannot be negative")
        if self.usage_period_hours <= 0:
            raise ValueError("usage_period_hours must be > 0")

    def daily_limit(self, tier: SubscriptionTier, kind: OperationKind) -> Optional[int]:
        """Get the daily limit for an operation on a tier, None when unlimited."""
        return self.daily_limits.get(tier, {}).get(kind)


DEFAULT_FIXED_COSTS = {
    OperationKind.STORY_TEXT: 0,
    OperationKind.STORY_SEGMENT: 0,
    OperationKind.IMAGE: 0,
    OperationKind.CHARACTER_IMAGE: 0,
}

DEFAULT_VIDEO_TIERS = (
    VideoTier(max_seconds=3, credits=5),
    VideoTier(max_seconds=5, credits=8),
)

DEFAULT_CREDIT_PACKS = {
    "pack_small": CreditPack(credits=50),
    "pack_medium": CreditPack(credits=100),
    "pack_large": CreditPack(credits=250),
    "pack_mega": CreditPack(credits=500),
    "subscription_starter": CreditPack(credits=100, tier=SubscriptionTier.STARTER),
    "subscription_premium": CreditPack(credits=300, tier=SubscriptionTier.PREMIUM),
}


def default_credit_config() -> CreditConfig:
    """Built-in configuration used when no file is supplied."""
    return CreditConfig(
        pricing=PricingConfig(
            fixed_costs=dict(DEFAULT_FIXED_COSTS),
            audio_words_per_credit=100,
            video_tiers=DEFAULT_VIDEO_TIERS,
            video_above_max_credits=12
        ),
        daily_limits={SubscriptionTier.FREE: {OperationKind.STORY_SEGMENT: 4}},
        subscription_required=frozenset({OperationKind.AUDIO}),
        credit_packs=dict(DEFAULT_CREDIT_PACKS)
    )


def load_credit_config(path: str) -> CreditConfig:
    """Load and validate credit configuration from a YAML file.

    Every section is optional and falls back to the built-in defaults, but
    unknown keys are rejected so a typo cannot silently change prices.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CreditConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Credit config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {
        'pricing', 'daily_limits', 'subscription_required', 'welcome_bonus',
        'usage_period_hours', 'charge_retry', 'credit_packs'
    }
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    defaults = default_credit_config()

    pricing = defaults.pricing
    if 'pricing' in raw_config:
        pricing = _parse_pricing(_section(raw_config, 'pricing'), defaults.pricing)

    daily_limits = defaults.daily_limits
    if 'daily_limits' in raw_config:
        daily_limits = _parse_daily_limits(_section(raw_config, 'daily_limits'))

    subscription_required = defaults.subscription_required
    if 'subscription_required' in raw_config:
        gated = raw_config['subscription_required'] or []
        if not isinstance(gated, list):
            raise ValueError("'subscription_required' must be a list")
        subscription_required = frozenset(
            _parse_operation_kind(kind, "subscription_required") for kind in gated
        )

    charge_retry = defaults.charge_retry
    if 'charge_retry' in raw_config:
        retry_data = _section(raw_config, 'charge_retry')
        _reject_unknown(retry_data, {'attempts', 'base_delay', 'max_delay'}, "charge_retry")
        charge_retry = ChargeRetryConfig(
            attempts=_int(retry_data.get('attempts', charge_retry.attempts), "charge_retry.attempts"),
            base_delay=float(retry_data.get('base_delay', charge_retry.base_delay)),
            max_delay=float(retry_data.get('max_delay', charge_retry.max_delay))
        )

    credit_packs = defaults.credit_packs
    if 'credit_packs' in raw_config:
        credit_packs = _parse_credit_packs(_section(raw_config, 'credit_packs'))

    return CreditConfig(
        pricing=pricing,
        daily_limits=daily_limits,
        subscription_required=subscription_required,
        welcome_bonus=_int(raw_config.get('welcome_bonus', defaults.welcome_bonus), "welcome_bonus"),
        usage_period_hours=_int(
            raw_config.get('usage_period_hours', defaults.usage_period_hours),
            "usage_period_hours"
        ),
        charge_retry=charge_retry,
        credit_packs=credit_packs
    )


def _parse_pricing(data: Dict, defaults: PricingConfig) -> PricingConfig:
    """Parse and validate the pricing section.

    Args:
        data: Pricing configuration data
        defaults: Values for keys the section leaves out

    Returns:
        Validated PricingConfig

    Raises:
        ValueError: If configuration is invalid
    """
    _reject_unknown(data, {'fixed', 'audio', 'video'}, "pricing")

    fixed_costs = dict(defaults.fixed_costs)
    if 'fixed' in data:
        fixed_data = _section(data, 'fixed', "pricing.fixed")
        for kind_name, cost in fixed_data.items():
            kind = _parse_operation_kind(kind_name, "pricing.fixed")
            if kind not in FIXED_OPERATION_KINDS:
                raise ValueError(f"'{kind_name}' in pricing.fixed is not a fixed-cost operation")
            fixed_costs[kind] = _int(cost, f"pricing.fixed.{kind_name}")

    words_per_credit = defaults.audio_words_per_credit
    if 'audio' in data:
        audio_data = _section(data, 'audio', "pricing.audio")
        _reject_unknown(audio_data, {'words_per_credit'}, "pricing.audio")
        words_per_credit = _int(
            audio_data.get('words_per_credit', words_per_credit),
            "pricing.audio.words_per_credit"
        )

    video_tiers = defaults.video_tiers
    above_max = defaults.video_above_max_credits
    if 'video' in data:
        video_data = _section(data, 'video', "pricing.video")
        _reject_unknown(video_data, {'tiers', 'above_max_credits'}, "pricing.video")
        if 'tiers' in video_data:
            tiers_data = video_data['tiers']
            if not isinstance(tiers_data, list):
                raise ValueError("'pricing.video.tiers' must be a list")
            video_tiers = tuple(
                _parse_video_tier(tier, f"pricing.video.tiers[{i}]")
                for i, tier in enumerate(tiers_data)
            )
        above_max = _int(video_data.get('above_max_credits', above_max), "pricing.video.above_max_credits")

    return PricingConfig(
        fixed_costs=fixed_costs,
        audio_words_per_credit=words_per_credit,
        video_tiers=video_tiers,
        video_above_max_credits=above_max
    )


def _parse_video_tier(data: Any, path: str) -> VideoTier:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _reject_unknown(data, {'max_seconds', 'credits'}, path)
    if 'max_seconds' not in data or 'credits' not in data:
        raise ValueError(f"'{path}' requires 'max_seconds' and 'credits'")
    max_seconds = data['max_seconds']
    if isinstance(max_seconds, bool) or not isinstance(max_seconds, (int, float)):
        raise ValueError(f"'{path}.max_seconds' must be a number")
    return VideoTier(max_seconds=float(max_seconds), credits=_int(data['credits'], f"{path}.credits"))


def _parse_daily_limits(data: Dict) -> Dict[SubscriptionTier, Dict[OperationKind, int]]:
    limits = {}
    for tier_name, tier_limits in data.items():
        tier = _parse_tier(tier_name, "daily_limits")
        if tier_limits is None:
            limits[tier] = {}
            continue
        if not isinstance(tier_limits, dict):
            raise ValueError(f"'daily_limits.{tier_name}' must be a dictionary")
        parsed = {}
        for kind_name, limit in tier_limits.items():
            path = f"daily_limits.{tier_name}.{kind_name}"
            kind = _parse_operation_kind(kind_name, f"daily_limits.{tier_name}")
            value = _int(limit, path)
            if value < 0:
                raise ValueError(f"'{path}' cannot be negative")
            parsed[kind] = value
        limits[tier] = parsed
    return limits


def _parse_credit_packs(data: Dict) -> Dict[str, CreditPack]:
    packs = {}
    for price_id, pack_data in data.items():
        path = f"credit_packs.{price_id}"
        if not isinstance(pack_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _reject_unknown(pack_data, {'credits', 'tier'}, path)
        if 'credits' not in pack_data:
            raise ValueError(f"Missing required 'credits' in {path}")
        tier = None
        if pack_data.get('tier') is not None:
            tier = _parse_tier(pack_data['tier'], path)
        packs[str(price_id)] = CreditPack(credits=_int(pack_data['credits'], f"{path}.credits"), tier=tier)
    return packs


def _parse_operation_kind(value: Any, path: str) -> OperationKind:
    try:
        return OperationKind(str(value).lower())
    except ValueError:
        valid = [kind.value for kind in OperationKind]
        raise ValueError(f"Unknown operation '{value}' in {path}, must be one of: {valid}")


def _parse_tier(value: Any, path: str) -> SubscriptionTier:
    try:
        return SubscriptionTier(str(value).lower())
    except ValueError:
        valid = [tier.value for tier in SubscriptionTier]
        raise ValueError(f"Unknown tier '{value}' in {path}, must be one of: {valid}")


def _section(data: Dict, key: str, path: Optional[str] = None) -> Dict:
    value = data[key]
    if not isinstance(value, dict):
        raise ValueError(f"'{path or key}' must be a dictionary")
    return value


def _int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
