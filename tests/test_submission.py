"""Unit tests for submission.py — validation, anti-abuse chain, persistence."""

import os
import sqlite3
from unittest.mock import MagicMock, patch

import pytest
import requests

import models
from errors import CaptchaFailed, InvalidPayload, NotFound, TooManyRequests
from places import PlaceIndex
from review_config import ALL_AREAS, AntiAbuseConfig
from submission import (
    ReviewDraft,
    hash_ip,
    resolve_place,
    submit_review,
    submit_suggestion,
    validate_review,
    validate_suggestion,
)


def _payload(**overrides):
    payload = {
        "county": "Kildare",
        "town": "Celbridge",
        "estate": "The Grove",
        "rating": 4,
        "title": "Quiet and friendly",
        "body": "Good neighbours, plenty of green space.",
    }
    payload.update(overrides)
    return payload


def _index():
    idx = PlaceIndex()
    idx.add("Kildare", "Celbridge", "The Grove")
    idx.add("Kildare", "Naas")
    return idx


OFF = AntiAbuseConfig()
RATE_LIMITED = AntiAbuseConfig(rate_limit_secret="hmac-secret", rate_limit_per_hour=5)
CAPTCHA = AntiAbuseConfig(captcha_secret="hc-secret", captcha_sitekey="hc-site")


def _captcha_response(success):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = 200
    resp.json.return_value = {"success": success}
    return resp


# =========================================================================
# Validation
# =========================================================================

class TestValidateReview:
    def test_valid_payload(self):
        draft = validate_review(_payload(name=" Aoife ", email="aoife@example.ie"))
        assert draft.rating == 4
        assert draft.author_name == "Aoife"
        assert draft.author_email == "aoife@example.ie"

    def test_reports_every_failing_field(self):
        with pytest.raises(InvalidPayload) as exc:
            validate_review({})
        assert set(exc.value.fields) == {"county", "town", "estate", "rating", "body"}

    @pytest.mark.parametrize("rating", [0, 6, 4.5, True, "four", None, ""])
    def test_bad_ratings(self, rating):
        with pytest.raises(InvalidPayload) as exc:
            validate_review(_payload(rating=rating))
        assert "rating" in exc.value.fields

    @pytest.mark.parametrize("rating,expected", [(1, 1), ("5", 5), (3.0, 3)])
    def test_accepted_ratings(self, rating, expected):
        assert validate_review(_payload(rating=rating)).rating == expected

    def test_length_limits(self):
        with pytest.raises(InvalidPayload) as exc:
            validate_review(_payload(body="x" * 4001, title="t" * 121, name="n" * 81))
        assert set(exc.value.fields) == {"body", "title", "name"}

    def test_body_at_limit_ok(self):
        assert len(validate_review(_payload(body="x" * 4000)).body) == 4000

    def test_blank_body_rejected(self):
        with pytest.raises(InvalidPayload) as exc:
            validate_review(_payload(body="   "))
        assert "body" in exc.value.fields

    def test_email_needs_at_sign(self):
        with pytest.raises(InvalidPayload) as exc:
            validate_review(_payload(email="not-an-email"))
        assert list(exc.value.fields) == ["email"]


class TestResolvePlace:
    def _draft(self, **kw):
        fields = dict(county="kildare", town="celbridge", estate="the grove", rating=5, body="ok")
        fields.update(kw)
        return ReviewDraft(**fields)

    def test_substitutes_display_names(self):
        draft = resolve_place(self._draft(), _index())
        assert (draft.county, draft.town, draft.estate) == ("Kildare", "Celbridge", "The Grove")

    def test_unknown_triple_not_found(self):
        with pytest.raises(NotFound):
            resolve_place(self._draft(estate="Nowhere Park"), _index())

    def test_all_areas_accepted(self):
        draft = resolve_place(self._draft(town="Naas", estate="All Areas"), _index())
        assert draft.estate == ALL_AREAS

    def test_empty_index_accepts_anything(self):
        draft = resolve_place(self._draft(estate="Nowhere Park"), PlaceIndex())
        assert draft.estate == "Nowhere Park"


# =========================================================================
# submit_review
# =========================================================================

class TestSubmitReview:
    def test_stores_pending_review(self):
        outcome = submit_review(_payload(), "1.2.3.4", index=_index(), config=OFF)
        assert outcome.to_dict() == {"ok": True, "status": "pending"}
        review = models.get_review(outcome.record_id)
        assert review["status"] == "pending"
        assert review["deleted_at"] is None

    def test_honeypot_reports_success_and_stores_nothing(self):
        outcome = submit_review(_payload(website="http://spam.example"), "1.2.3.4",
                                index=_index(), config=RATE_LIMITED)
        assert outcome.ok and outcome.dropped
        assert models.list_reviews("pending") == []
        assert models.count_recent_submissions(hash_ip("1.2.3.4", "hmac-secret")) == 0

    def test_invalid_payload_has_no_side_effects(self):
        with patch("submission.email_service.send_review_alert") as mock_alert:
            with pytest.raises(InvalidPayload):
                submit_review(_payload(rating=9), "1.2.3.4", index=_index(), config=RATE_LIMITED)
        mock_alert.assert_not_called()
        assert models.list_reviews("pending") == []
        assert models.count_recent_submissions(hash_ip("1.2.3.4", "hmac-secret")) == 0

    def test_sends_alert_for_stored_review(self):
        with patch("submission.email_service.send_review_alert") as mock_alert:
            outcome = submit_review(_payload(), "1.2.3.4", index=_index(), config=OFF)
        mock_alert.assert_called_once()
        assert mock_alert.call_args[0][0]["id"] == outcome.record_id

    @patch.dict(os.environ, {"RESEND_API_KEY": "re_test_key", "ALERT_EMAIL_TO": "mods@example.ie"})
    def test_email_failure_does_not_fail_submission(self):
        mock_resend = MagicMock()
        mock_resend.Emails.send.side_effect = RuntimeError("API down")
        with patch.dict("sys.modules", {"resend": mock_resend}):
            outcome = submit_review(_payload(), "1.2.3.4", index=_index(), config=OFF)
        assert outcome.ok
        assert models.get_review(outcome.record_id) is not None


class TestCaptcha:
    def test_missing_token_fails(self):
        with pytest.raises(CaptchaFailed):
            submit_review(_payload(), "1.2.3.4", index=_index(), config=CAPTCHA)
        assert models.list_reviews("pending") == []

    @patch("submission.requests.post")
    def test_rejected_token_fails(self, mock_post):
        mock_post.return_value = _captcha_response(False)
        with pytest.raises(CaptchaFailed):
            submit_review(_payload(captchaToken="bad"), "1.2.3.4", index=_index(), config=CAPTCHA)

    @patch("submission.requests.post")
    def test_verifier_error_fails(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(CaptchaFailed):
            submit_review(_payload(captchaToken="tok"), "1.2.3.4", index=_index(), config=CAPTCHA)

    @patch("submission.requests.post")
    def test_accepted_token_stores(self, mock_post):
        mock_post.return_value = _captcha_response(True)
        outcome = submit_review(_payload(**{"h-captcha-response": "tok"}), "1.2.3.4",
                                index=_index(), config=CAPTCHA)
        assert models.get_review(outcome.record_id)["status"] == "pending"
        assert mock_post.call_args.kwargs["data"] == {"secret": "hc-secret", "response": "tok"}

    @patch("submission.requests.post")
    def test_unconfigured_captcha_skips_verifier(self, mock_post):
        submit_review(_payload(), "1.2.3.4", index=_index(), config=OFF)
        mock_post.assert_not_called()


class TestRateLimit:
    def test_sixth_submission_in_window_rejected(self):
        for _ in range(5):
            submit_review(_payload(), "9.9.9.9", index=_index(), config=RATE_LIMITED)
        with pytest.raises(TooManyRequests):
            submit_review(_payload(), "9.9.9.9", index=_index(), config=RATE_LIMITED)
        assert len(models.list_reviews("pending")) == 5

    def test_other_ip_unaffected(self):
        for _ in range(5):
            submit_review(_payload(), "9.9.9.9", index=_index(), config=RATE_LIMITED)
        submit_review(_payload(), "8.8.8.8", index=_index(), config=RATE_LIMITED)

    def test_log_stores_hash_not_ip(self):
        submit_review(_payload(), "9.9.9.9", index=_index(), config=RATE_LIMITED)
        conn = models._get_db()
        row = conn.execute("SELECT ip_hash FROM submission_log").fetchone()
        conn.close()
        assert row["ip_hash"] == hash_ip("9.9.9.9", "hmac-secret")
        assert "9.9.9.9" not in row["ip_hash"]

    def test_count_failure_allows_submission(self):
        with patch("submission.models.count_recent_submissions",
                   side_effect=sqlite3.OperationalError("locked")):
            outcome = submit_review(_payload(), "9.9.9.9", index=_index(), config=RATE_LIMITED)
        assert outcome.ok

    def test_disabled_without_secret(self):
        for _ in range(7):
            submit_review(_payload(), "9.9.9.9", index=_index(), config=OFF)
        assert len(models.list_reviews("pending")) == 7

    def test_hash_depends_on_secret(self):
        assert hash_ip("1.2.3.4", "a") == hash_ip("1.2.3.4", "a")
        assert hash_ip("1.2.3.4", "a") != hash_ip("1.2.3.4", "b")


# =========================================================================
# Suggestions
# =========================================================================

class TestSuggestions:
    def test_required_fields(self):
        with pytest.raises(InvalidPayload) as exc:
            validate_suggestion({"county": "Kildare"})
        assert set(exc.value.fields) == {"town", "estate"}

    def test_values_truncated(self):
        fields = validate_suggestion({
            "county": "C" * 100, "town": "T" * 200, "estate": "E" * 300, "notes": "N" * 2000,
        })
        assert len(fields["county"]) == 80
        assert len(fields["town"]) == 120
        assert len(fields["estate"]) == 160
        assert len(fields["notes"]) == 1000

    def test_stores_pending_suggestion(self):
        outcome = submit_suggestion({"county": "Kildare", "town": "Maynooth",
                                     "estate": "Rail Park", "email": "me@example.ie"})
        stored = models.get_suggestion(outcome.record_id)
        assert stored["status"] == "pending"
        assert stored["contact_email"] == "me@example.ie"

    def test_honeypot_drops(self):
        outcome = submit_suggestion({"county": "Kildare", "town": "Maynooth",
                                     "estate": "Rail Park", "hp": "bot"})
        assert outcome.dropped
        assert models.list_suggestions("pending") == []
