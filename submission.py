"""
Review and area-suggestion intake.

submit_review() runs, in order:
  1. Field validation (every failing field reported at once)
  2. Place resolution against the Place Index
  3. Honeypot       -> silent success, nothing stored
  4. hCaptcha       -> skipped when not configured
  5. Rate limit     -> HMAC'd client IP counted in the submission log
  6. Insert as 'pending', then best-effort submission log + alert email

Nothing is written before step 6, so a rejected submission leaves no trace.
"""

import hashlib
import hmac
import logging
import sqlite3
from dataclasses import dataclass
from typing import Mapping, Optional

import requests

import email_service
import models
from errors import CaptchaFailed, InvalidPayload, NotFound, TooManyRequests
from places import PlaceIndex
from review_config import (
    REVIEW_LIMITS,
    SUGGESTION_LIMITS,
    AntiAbuseConfig,
    ReviewLimits,
    SuggestionLimits,
)

logger = logging.getLogger(__name__)

HONEYPOT_FIELDS = ("website", "hp")
CAPTCHA_FIELDS = ("captchaToken", "hcaptchaToken", "h-captcha-response")


@dataclass
class ReviewDraft:
    county: str
    town: str
    estate: str
    rating: int
    body: str
    title: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None


@dataclass
class SubmissionOutcome:
    """What the caller reports back. dropped=True means the honeypot fired."""
    ok: bool = True
    status: str = "pending"
    record_id: Optional[str] = None
    dropped: bool = False

    def to_dict(self) -> dict:
        return {"ok": self.ok, "status": self.status}


# =============================================================================
# Validation
# =============================================================================

def _text(payload: Mapping, *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return str(value).strip()
    return ""


def _parse_rating(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    return None


def validate_review(payload: Mapping, limits: ReviewLimits = REVIEW_LIMITS) -> ReviewDraft:
    """Check every field; raise InvalidPayload listing all failures."""
    errors = {}
    county = _text(payload, "county")
    town = _text(payload, "town")
    estate = _text(payload, "estate")
    title = _text(payload, "title")
    body = _text(payload, "body")
    name = _text(payload, "name", "author_name")
    email = _text(payload, "email", "author_email")

    for field_name, value in (("county", county), ("town", town), ("estate", estate)):
        if not value:
            errors[field_name] = "Required."

    rating = _parse_rating(payload.get("rating"))
    if rating is None or not (limits.rating_min <= rating <= limits.rating_max):
        errors["rating"] = f"Must be a whole number from {limits.rating_min} to {limits.rating_max}."

    if not body:
        errors["body"] = "Please describe your experience."
    elif len(body) > limits.body_max:
        errors["body"] = f"Must be at most {limits.body_max} characters."

    if len(title) > limits.title_max:
        errors["title"] = f"Must be at most {limits.title_max} characters."
    if len(name) > limits.author_name_max:
        errors["name"] = f"Must be at most {limits.author_name_max} characters."
    if email and (len(email) > limits.author_email_max or "@" not in email):
        errors["email"] = "Must be a valid email address."

    if errors:
        raise InvalidPayload(errors)

    return ReviewDraft(
        county=county, town=town, estate=estate, rating=rating, body=body,
        title=title or None, author_name=name or None, author_email=email or None,
    )


def validate_suggestion(payload: Mapping, limits: SuggestionLimits = SUGGESTION_LIMITS) -> dict:
    """Required county/town/estate; overlong values are truncated."""
    county = _text(payload, "county")
    town = _text(payload, "town")
    estate = _text(payload, "estate")
    errors = {name: "Required." for name, value in
              (("county", county), ("town", town), ("estate", estate)) if not value}
    email = _text(payload, "email", "contactEmail")
    if email and "@" not in email:
        errors["email"] = "Must be a valid email address."
    if errors:
        raise InvalidPayload(errors, "county, town, and estate are required.")

    notes = _text(payload, "notes")
    return {
        "county": county[:limits.county_max],
        "town": town[:limits.town_max],
        "estate": estate[:limits.estate_max],
        "notes": notes[:limits.notes_max] or None,
        "contact_email": email[:limits.email_max] or None,
    }


def resolve_place(draft: ReviewDraft, index: Optional[PlaceIndex]) -> ReviewDraft:
    """Swap in canonical display names. An empty index accepts any triple."""
    if not index:
        return draft
    resolved = index.resolve(draft.county, draft.town, draft.estate)
    if resolved is None:
        raise NotFound(f"{draft.estate}, {draft.town}, {draft.county} is not a known area.")
    draft.county, draft.town, draft.estate = resolved
    return draft


# =============================================================================
# Anti-abuse
# =============================================================================

def honeypot_filled(payload: Mapping) -> bool:
    return any(_text(payload, field_name) for field_name in HONEYPOT_FIELDS)


def hash_ip(ip: str, secret: str) -> str:
    return hmac.new(secret.encode(), (ip or "").encode(), hashlib.sha256).hexdigest()


def verify_captcha(token: Optional[str], config: AntiAbuseConfig) -> bool:
    """hCaptcha siteverify. Always True when captcha is not configured."""
    if not config.captcha_enabled:
        return True
    if not token:
        return False
    try:
        resp = requests.post(
            config.captcha_verify_url,
            data={"secret": config.captcha_secret, "response": token},
            timeout=config.captcha_timeout,
        )
        return bool(resp.json().get("success"))
    except (requests.exceptions.RequestException, ValueError):
        logger.warning("Captcha verification request failed", exc_info=True)
        return False


def check_rate_limit(client_ip: str, config: AntiAbuseConfig) -> Optional[str]:
    """Raise TooManyRequests when over the ceiling. Returns the IP hash to log.

    A failed count is treated as zero: an undercount only relaxes the limit.
    """
    if not config.rate_limit_enabled:
        return None
    ip_hash = hash_ip(client_ip, config.rate_limit_secret)
    try:
        count = models.count_recent_submissions(ip_hash, minutes=config.window_minutes)
    except sqlite3.Error:
        logger.warning("Rate-limit count failed; allowing submission", exc_info=True)
        count = 0
    if count >= config.rate_limit_per_hour:
        raise TooManyRequests()
    return ip_hash


def _record_submission(ip_hash: Optional[str]) -> None:
    if not ip_hash:
        return
    try:
        models.log_submission(ip_hash)
    except sqlite3.Error:
        logger.warning("Submission log append failed", exc_info=True)


# =============================================================================
# Entry points
# =============================================================================

def submit_review(payload: Mapping, client_ip: str,
                  index: Optional[PlaceIndex] = None,
                  config: Optional[AntiAbuseConfig] = None) -> SubmissionOutcome:
    config = config or AntiAbuseConfig.from_env()
    draft = resolve_place(validate_review(payload), index)

    if honeypot_filled(payload):
        logger.info("Honeypot filled; dropping review for %s/%s", draft.town, draft.estate)
        return SubmissionOutcome(dropped=True)

    if not verify_captcha(_text(payload, *CAPTCHA_FIELDS), config):
        raise CaptchaFailed()

    ip_hash = check_rate_limit(client_ip, config)

    review = models.create_review(
        draft.county, draft.town, draft.estate, draft.rating, draft.body,
        title=draft.title, author_name=draft.author_name, author_email=draft.author_email,
    )
    logger.info("Review %s stored as pending for %s / %s / %s",
                review["id"], draft.county, draft.town, draft.estate)

    _record_submission(ip_hash)
    email_service.send_review_alert(review)
    return SubmissionOutcome(record_id=review["id"])


def submit_suggestion(payload: Mapping) -> SubmissionOutcome:
    fields = validate_suggestion(payload)
    if honeypot_filled(payload):
        logger.info("Honeypot filled; dropping suggestion")
        return SubmissionOutcome(dropped=True)

    suggestion = models.create_suggestion(**fields)
    logger.info("Suggestion %s stored: %s, %s, %s", suggestion["id"],
                fields["estate"], fields["town"], fields["county"])
    email_service.send_suggestion_alert(suggestion)
    return SubmissionOutcome(record_id=suggestion["id"])


