"""
Limits and thresholds for StreetSage.

Owns every numeric constant that shapes validation, anti-abuse and
typeahead ranking. Environment-driven values (secrets, the per-hour
ceiling) are read once via from_env(); everything else is fixed here.

Frozen dataclasses give type checking and IDE support without the
indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass


# Synthetic estate meaning "the town as a whole".
ALL_AREAS = "All Areas"


@dataclass(frozen=True)
class ReviewLimits:
    """Length ceilings for review fields (characters)."""
    title_max: int = 120
    body_max: int = 4000
    author_name_max: int = 80
    author_email_max: int = 254
    rating_min: int = 1
    rating_max: int = 5


@dataclass(frozen=True)
class SuggestionLimits:
    """Suggestions are truncated, not rejected, when too long."""
    county_max: int = 80
    town_max: int = 120
    estate_max: int = 160
    notes_max: int = 1000
    email_max: int = 254


@dataclass(frozen=True)
class AntiAbuseConfig:
    """Captcha and rate-limit settings.

    Both features are off unless their secrets are configured.
    """
    rate_limit_secret: str = ""
    rate_limit_per_hour: int = 5
    window_minutes: int = 60
    captcha_secret: str = ""
    captcha_sitekey: str = ""
    captcha_verify_url: str = "https://hcaptcha.com/siteverify"
    captcha_timeout: int = 10  # seconds

    @property
    def rate_limit_enabled(self) -> bool:
        return bool(self.rate_limit_secret)

    @property
    def captcha_enabled(self) -> bool:
        return bool(self.captcha_secret and self.captcha_sitekey)

    @classmethod
    def from_env(cls) -> "AntiAbuseConfig":
        try:
            per_hour = int(os.environ.get("RATE_LIMIT_PER_HOUR", "5"))
        except ValueError:
            per_hour = 5
        return cls(
            rate_limit_secret=os.environ.get("RATE_LIMIT_SECRET", ""),
            rate_limit_per_hour=per_hour,
            captcha_secret=os.environ.get("HCAPTCHA_SECRET", ""),
            captcha_sitekey=os.environ.get("HCAPTCHA_SITEKEY", ""),
            captcha_verify_url=os.environ.get(
                "HCAPTCHA_VERIFY_URL", "https://hcaptcha.com/siteverify"
            ),
        )


@dataclass(frozen=True)
class RankingConfig:
    """Typeahead ranking parameters."""
    fuzzy_ratio: float = 0.5     # max edit distance = ceil(len(query) * ratio)
    query_cap: int = 32          # chars of the query compared for fuzzy distance
    candidate_cap: int = 64      # chars of each candidate compared


@dataclass(frozen=True)
class ModerationLimits:
    list_limit: int = 500
    export_limit: int = 5000
    feed_limit: int = 50


REVIEW_LIMITS = ReviewLimits()
SUGGESTION_LIMITS = SuggestionLimits()
RANKING = RankingConfig()
MODERATION_LIMITS = ModerationLimits()
