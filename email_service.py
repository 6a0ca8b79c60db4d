"""
Email delivery via Resend. Moderation alerts for new submissions.

Email failure must never break a submission — all send functions
swallow exceptions and return False on failure.
"""

import html
import os
import logging

logger = logging.getLogger(__name__)

DEFAULT_FROM_ADDRESS = "StreetSage <alerts@streetsage.ie>"


def _mask(email: str) -> str:
    return (email or "")[:3] + "***"


def _send(subject: str, text_body: str, html_body: str) -> bool:
    """Send one alert to the moderation inbox. Returns True on success."""
    api_key = os.environ.get("RESEND_API_KEY")
    to_address = os.environ.get("ALERT_EMAIL_TO")
    if not api_key or not to_address:
        logger.info("RESEND_API_KEY or ALERT_EMAIL_TO not set; skipping alert %r", subject)
        return False

    try:
        import resend

        resend.api_key = api_key
        params = {
            "from": os.environ.get("ALERT_EMAIL_FROM", DEFAULT_FROM_ADDRESS),
            "to": [to_address],
            "subject": subject,
            "text": text_body,
            "html": html_body,
        }
        resend.Emails.send(params)
        return True

    except Exception as e:
        logger.warning(
            "Failed to send alert %r to %s: %s",
            subject,
            _mask(to_address),
            e,
            exc_info=True,
        )
        return False


def _moderation_url() -> str:
    base_url = os.environ.get("STREETSAGE_BASE_URL", "https://streetsage.ie")
    return f"{base_url.rstrip('/')}/admin/moderate"


def send_review_alert(review: dict) -> bool:
    """Tell moderators a review is waiting. Never raises."""
    place = f"{review.get('county')} / {review.get('town')} / {review.get('estate')}"
    author = " ".join(
        part for part in (review.get("author_name"), review.get("author_email")) if part
    ) or "Anonymous"
    text_body = (
        f"{place}\n\n"
        f"Title: {review.get('title') or ''}\n"
        f"Rating: {review.get('rating')}\n\n"
        f"{review.get('body') or ''}\n\n"
        f"From: {author}\n\n"
        f"Moderate: {_moderation_url()}"
    )
    html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; line-height: 1.5; color: #1f2937;">
  <div style="max-width: 520px; margin: 0 auto; padding: 1.5rem;">
    <p style="font-size: 1.25rem; font-weight: 600;">New review (pending)</p>
    <p><strong>{html.escape(place)}</strong> &middot; {html.escape(str(review.get('rating')))}/5</p>
    <p><strong>{html.escape(review.get('title') or '')}</strong></p>
    <p style="white-space: pre-wrap;">{html.escape(review.get('body') or '')}</p>
    <p style="font-size: 0.875rem; color: #6b7280;">From: {html.escape(author)}</p>
    <p><a href="{_moderation_url()}">Open the moderation queue</a></p>
  </div>
</body>
</html>
""".strip()
    return _send("New review submitted (pending)", text_body, html_body)


def send_suggestion_alert(suggestion: dict) -> bool:
    """Tell moderators a new area was suggested. Never raises."""
    place = f"{suggestion.get('estate')}, {suggestion.get('town')}, {suggestion.get('county')}"
    notes = suggestion.get("notes") or ""
    text_body = f"Suggested area: {place}\n\n{notes}\n\nModerate: {_moderation_url()}"
    html_body = (
        f"<p>Suggested area: <strong>{html.escape(place)}</strong></p>"
        f"<p style=\"white-space: pre-wrap;\">{html.escape(notes)}</p>"
        f"<p><a href=\"{_moderation_url()}\">Open the moderation queue</a></p>"
    )
    return _send("New area suggestion", text_body, html_body)
