import os
import sys
import io
import csv
import logging
import sqlite3
import threading
import uuid
from flask import (
    Flask, request, render_template, redirect, abort, jsonify, g, Response
)
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import models
from errors import InvalidPayload, NotFound, ServiceError, StorageUnavailable
from moderation import (
    moderate_reviews, moderate_suggestions, require_moderator, validate_view,
)
from places import PlaceIndex, load_sources
from review_config import ALL_AREAS, MODERATION_LIMITS, REVIEW_LIMITS, AntiAbuseConfig
from selector import LEVELS, CascadingSelector
from submission import HONEYPOT_FIELDS, submit_review, submit_suggestion

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking — gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Validation, auth, captcha, rate-limit: the client's problem
            if exc_type is not None and issubclass(exc_type, ServiceError) \
                    and exc_type is not StorageUnavailable:
                sentry_sdk.add_breadcrumb(
                    category="service",
                    message=msg,
                    level="info",
                )
                return None
            # hCaptcha / Overpass request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'streetsage-dev-key')
app.config['HCAPTCHA_SITEKEY'] = os.environ.get('HCAPTCHA_SITEKEY')
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() != 'false'
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'streetsage-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: request.remote_addr becomes the real client IP,
# which is what the submission rate limit hashes.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection for browser forms and fetch() calls (X-CSRFToken header).
# Bearer-token moderation endpoints are exempt.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting — coarse per-IP budget on every route. Review submissions
# additionally go through the HMAC'd submission log (submission.py).
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SUGGEST = os.environ.get("RATE_LIMIT_SUGGEST", "10/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

if not os.environ.get("MODERATOR_TOKEN"):
    logger.warning(
        "MODERATOR_TOKEN is not set. Moderation endpoints will reject every request."
    )


# ---------------------------------------------------------------------------
# Place index — built once per process, rebuilt when a suggestion is approved
# ---------------------------------------------------------------------------
_DEFAULT_PLACES = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "places.csv")
PLACES_SOURCES = [
    p.strip() for p in os.environ.get("PLACES_SOURCES", _DEFAULT_PLACES).split(",") if p.strip()
]

_place_index = None
_place_index_lock = threading.Lock()


def refresh_place_index(*_args) -> PlaceIndex:
    """Reload every place source plus the estates table."""
    global _place_index
    try:
        rows = models.list_estates()
    except sqlite3.Error:
        logger.warning("Could not read estates table; using file sources only", exc_info=True)
        rows = []
    index = load_sources(PLACES_SOURCES, extra_rows=rows)
    with _place_index_lock:
        _place_index = index
    logger.info("Place index ready: %d counties, %d estate rows from DB", len(index), len(rows))
    return index


def get_place_index() -> PlaceIndex:
    with _place_index_lock:
        index = _place_index
    if index is None:
        index = refresh_place_index()
    return index


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


def _wants_json():
    """Return True if the client prefers a JSON response."""
    accept = request.headers.get("Accept", "")
    return "application/json" in accept or request.path.startswith("/api/")


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidPayload({"payload": "Expected a JSON object."}, "Bad payload")
    return payload


def _moderator_secret():
    return os.environ.get("MODERATOR_TOKEN")


def _check_service_config():
    """
    Validate service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not _moderator_secret():
        missing.append("MODERATOR_TOKEN")
    return (len(missing) == 0, missing)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@app.route("/api/estates")
def api_estates():
    return jsonify({"estates": models.list_estates()})


@app.route("/api/places/options")
def api_place_options():
    """Ranked typeahead options for one picker level."""
    level = request.args.get("level", "county")
    selector = CascadingSelector(get_place_index())
    county = request.args.get("county", "").strip()
    town = request.args.get("town", "").strip()
    if county:
        selector.select_county(county)
    if town:
        selector.select_town(town)
    options = selector.filter_options(level, request.args.get("q", ""))
    return jsonify({
        "level": level,
        "options": options,
        "counts": selector.option_counts(level),
    })


@app.route("/api/reviews", methods=["GET"])
def api_list_reviews():
    county = request.args.get("county", "").strip()
    town = request.args.get("town", "").strip()
    estate = request.args.get("estate", "").strip()
    missing = {name: "Required." for name, value in
               (("county", county), ("town", town), ("estate", estate)) if not value}
    if missing:
        raise InvalidPayload(missing, "Missing county/town/estate")

    resolved = get_place_index().resolve(county, town, estate)
    if resolved:
        county, town, estate = resolved
    items = models.list_approved_reviews(
        county, town, estate, limit=MODERATION_LIMITS.feed_limit,
    )
    return jsonify({"items": items})


@app.route("/api/reviews", methods=["POST"])
def api_submit_review():
    outcome = submit_review(
        _json_payload(),
        request.remote_addr or "",
        index=get_place_index(),
        config=AntiAbuseConfig.from_env(),
    )
    if outcome.record_id:
        logger.info("[%s] Review %s accepted", g.request_id, outcome.record_id)
    return jsonify(outcome.to_dict())


@app.route("/api/suggestions", methods=["POST"])
@limiter.limit(RATE_LIMIT_SUGGEST)
def api_submit_suggestion():
    outcome = submit_suggestion(_json_payload())
    return jsonify({"ok": outcome.ok})


# ---------------------------------------------------------------------------
# Moderation API (bearer token)
# ---------------------------------------------------------------------------

@app.route("/api/moderation", methods=["GET"])
def api_moderation_list():
    require_moderator(request.headers, _moderator_secret())
    kind = request.args.get("kind", "reviews")
    if kind == "suggestions":
        view = validate_view(request.args.get("view"), models.SUGGESTION_VIEWS)
        items = models.list_suggestions(view, limit=MODERATION_LIMITS.list_limit)
        return jsonify({"ok": True, "view": view, "suggestions": items})
    view = validate_view(request.args.get("view"))
    items = models.list_reviews(view, limit=MODERATION_LIMITS.list_limit)
    return jsonify({"ok": True, "view": view, "reviews": items})


@app.route("/api/moderation", methods=["POST"])
@csrf.exempt  # Bearer-token API; no browser session involved.
def api_moderation_update():
    require_moderator(request.headers, _moderator_secret())
    payload = _json_payload()
    if payload.get("kind") == "suggestions":
        result = moderate_suggestions(
            payload.get("ids"), payload.get("action"), on_places_changed=refresh_place_index,
        )
    else:
        result = moderate_reviews(payload.get("ids"), payload.get("action"))
    logger.info(
        "[%s] Moderation %s: %d ok, %d failed",
        g.request_id, result.action, len(result.succeeded), len(result.failed),
    )
    return jsonify(result.to_dict())


EXPORT_COLUMNS = [
    "id", "created_at", "county", "town", "estate", "rating", "title",
    "body", "author_name", "author_email", "status", "deleted_at",
]


@app.route("/api/export-reviews", methods=["GET", "POST"])
@csrf.exempt  # Bearer-token API; no browser session involved.
def api_export_reviews():
    """CSV export of a moderation view, or of an explicit id list (POST)."""
    require_moderator(request.headers, _moderator_secret())
    ids = None
    view = request.args.get("view")
    if request.method == "POST":
        payload = request.get_json(silent=True) or {}
        view = payload.get("view", view)
        if isinstance(payload.get("ids"), list):
            ids = [str(i) for i in payload["ids"] if i]
    view = validate_view(view)
    rows = models.list_reviews(view, limit=MODERATION_LIMITS.export_limit, ids=ids)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for row in rows:
        writer.writerow(["" if row.get(col) is None else row.get(col) for col in EXPORT_COLUMNS])

    label = "selected" if ids else view
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=streetsage-reviews-{label}.csv"
        },
    )


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.route("/")
def index():
    """Cascading County -> Town -> Estate picker, rendered server-side."""
    place_index = get_place_index()
    selector = CascadingSelector(
        place_index,
        on_navigate=lambda path: logger.info("[%s] Selection resolved to %s", g.request_id, path),
    )
    selector.apply(
        request.args.get("county", "").strip() or None,
        request.args.get("town", "").strip() or None,
        request.args.get("estate", "").strip() or None,
    )
    if request.args.get("town") and not request.args.get("q"):
        path = selector.resolve()
        if path:
            return redirect(path)

    filter_level = request.args.get("level", "")
    query = request.args.get("q", "")
    pickers = []
    for level in LEVELS:
        pickers.append({
            "level": level,
            "selected": getattr(selector, level),
            "enabled": level == "county" or getattr(selector, f"{level}_enabled"),
            "options": selector.filter_options(level, query if level == filter_level else ""),
            "counts": selector.option_counts(level),
        })
    return render_template(
        "index.html",
        pickers=pickers,
        selector=selector,
        query=query,
        filter_level=filter_level,
        has_places=bool(place_index),
    )


@app.route("/<county_slug>/<town_slug>/<estate_slug>", methods=["GET", "POST"])
def estate_page(county_slug, town_slug, estate_slug):
    """Estate page: approved reviews plus the review form."""
    resolved = get_place_index().resolve_slugs(county_slug, town_slug, estate_slug)
    if resolved is None:
        abort(404)
    county, town, estate = resolved

    form = {}
    errors = {}
    error_message = None
    submitted = False
    status_code = 200
    if request.method == "POST":
        form = request.form.to_dict()
        payload = dict(form, county=county, town=town, estate=estate)
        try:
            submit_review(
                payload,
                request.remote_addr or "",
                index=get_place_index(),
                config=AntiAbuseConfig.from_env(),
            )
            submitted = True
            form = {}
        except ServiceError as e:
            logger.info("[%s] Review form rejected: %s", g.request_id, e.message)
            errors = getattr(e, "fields", {}) or {}
            error_message = e.message
            status_code = e.status_code

    reviews = models.list_approved_reviews(
        county, town, estate, limit=MODERATION_LIMITS.feed_limit,
    )
    return render_template(
        "estate.html",
        county=county,
        town=town,
        estate=estate,
        is_all_areas=estate == ALL_AREAS,
        reviews=reviews,
        form=form,
        errors=errors,
        error_message=error_message,
        submitted=submitted,
        limits=REVIEW_LIMITS,
        honeypot_field=HONEYPOT_FIELDS[0],
        hcaptcha_sitekey=app.config["HCAPTCHA_SITEKEY"],
    ), status_code


@app.route("/admin/moderate")
@limiter.exempt
def moderate_page():
    """Moderation console. Data is fetched client-side with the moderator token."""
    return render_template("moderate.html", views=models.REVIEW_VIEWS)


@app.route("/robots.txt")
@limiter.exempt
def robots_txt():
    """Serve robots.txt with crawler rules."""
    body = (
        "User-agent: *\n"
        "Allow: /\n"
        "\n"
        "Disallow: /api/\n"
        "Disallow: /admin/\n"
        "Disallow: /healthz\n"
    )
    return Response(body, mimetype="text/plain")


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(ServiceError)
def handle_service_error(e):
    request_id = getattr(g, "request_id", "-")
    if e.status_code >= 500:
        logger.warning("[%s] %s %s failed: %s", request_id, request.method, request.path, e.message)
    else:
        logger.info("[%s] %s %s rejected (%s): %s",
                    request_id, request.method, request.path, e.code, e.message)
    if not _wants_json() and isinstance(e, NotFound):
        return render_template("404.html"), 404
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(sqlite3.Error)
def handle_storage_error(e):
    logger.error(
        "[%s] Storage error on %s %s",
        getattr(g, "request_id", "-"), request.method, request.path,
        exc_info=e,
    )
    return handle_service_error(StorageUnavailable())


@app.errorhandler(429)
def rate_limit_exceeded(e):
    if _wants_json():
        return jsonify({
            "ok": False,
            "error": "too-many-requests",
            "message": "Too many requests. Please wait and try again.",
        }), 429
    return render_template("429.html"), 429


@app.errorhandler(404)
def not_found(e):
    if _wants_json():
        return jsonify({"ok": False, "error": "not-found", "message": "Not found"}), 404
    return render_template("404.html"), 404


@app.errorhandler(500)
def internal_error(e):
    if _wants_json():
        return jsonify({"ok": False, "error": "internal", "message": "Internal error"}), 500
    return render_template("500.html"), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
models.init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
