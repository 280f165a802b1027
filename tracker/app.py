import atexit
import functools
import logging

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from werkzeug.exceptions import InternalServerError

from . import queries
from .chart import render_site_chart
from .config import Settings
from .db import open_store
from .queries import LISTING_LIMIT, TOP_PAGES_LIMIT, Visit, VisitFilter

logger = logging.getLogger(__name__)

TRACK_FAILED = "Tracking failed"
FETCH_FAILED = "Failed to fetch analytics"
CHART_FAILED = "Failed to generate chart"

bp = Blueprint("tracker", __name__)


def get_store():
    return current_app.extensions["tracker.store"]


def guarded(message):
    """
    Turn any failure inside the view into a logged 500 with a fixed message.
    Callers never see the underlying error.
    """
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except Exception:
                logger.exception("%s %s failed", request.method, request.path)
                return jsonify({"message": message}), 500
        return wrapper
    return decorator


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def client_ip(req):
    """
    First hop of X-Forwarded-For, else the transport peer address.
    """
    forwarded = req.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    return first or req.remote_addr


def pick_cors_origin(request_origin, allowed_origins):
    """
    Return the origin to echo back if it matches the allowlist.
    """
    if not request_origin:
        return "*" if "*" in allowed_origins else None
    if "*" in allowed_origins or request_origin in allowed_origins:
        return request_origin
    return None


@bp.after_app_request
def add_cors_headers(resp):
    allowed = current_app.config["TRACKER_SETTINGS"].cors_allow_origins
    origin = pick_cors_origin(request.headers.get("Origin"), allowed)

    if origin:
        req_method = request.headers.get("Access-Control-Request-Method", "GET,POST,OPTIONS")
        req_headers = request.headers.get("Access-Control-Request-Headers", "Content-Type")

        resp.headers["Access-Control-Allow-Origin"] = origin
        if origin != "*":
            resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = req_method
        resp.headers["Access-Control-Allow-Headers"] = req_headers
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp


# -----------------------------------------------------------------------------
# Ingest
# -----------------------------------------------------------------------------
@bp.route("/")
def index():
    return jsonify({"message": "Tracking server running"})


@bp.route("/healthz")
def healthz():
    return "ok", 200


@bp.route("/track", methods=["POST"])
@guarded(TRACK_FAILED)
def track():
    """
    Beacon endpoint. Body example:
      { "site": "example.com", "page": "/pricing", "referrer": "https://...",
        "userAgent": "Mozilla/5.0 ...", "screen": "1920x1080" }
    navigator.sendBeacon posts text/plain, so the body is parsed as JSON
    whatever the Content-Type says.
    """
    logger.debug("Content-Type: %s", request.content_type)
    data = request.get_json(force=True, silent=True)
    logger.debug("Body: %r", data)

    visit = Visit.from_payload(data, client_ip(request))
    queries.record_visit(get_store(), visit)
    return jsonify({"message": "Tracked"})


# -----------------------------------------------------------------------------
# Analytics
# -----------------------------------------------------------------------------
@bp.route("/analytics/visits-over-time")
@guarded(FETCH_FAILED)
def visits_over_time():
    f = VisitFilter.from_args(request.args)
    return jsonify(queries.visits_over_time(get_store(), f))


@bp.route("/analytics/by-site")
@guarded(FETCH_FAILED)
def by_site():
    f = VisitFilter.from_args(request.args)
    return jsonify(queries.visits_by_site(get_store(), f))


@bp.route("/analytics/by-site/svg")
@guarded(CHART_FAILED)
def by_site_svg():
    f = VisitFilter.from_args(request.args)
    svg = render_site_chart(queries.visits_by_site(get_store(), f))
    resp = Response(svg, mimetype="image/svg+xml")
    resp.headers["Cache-Control"] = "no-store"
    return resp


@bp.route("/analytics/top-pages")
@guarded(FETCH_FAILED)
def top_pages():
    f = VisitFilter.from_args(request.args, default_limit=TOP_PAGES_LIMIT)
    return jsonify(queries.top_pages(get_store(), f))


@bp.route("/analytics/visits")
@guarded(FETCH_FAILED)
def visits():
    f = VisitFilter.from_args(request.args, default_limit=LISTING_LIMIT)
    return jsonify(queries.list_visits(get_store(), f))


@bp.route("/analytics/summary")
@guarded(FETCH_FAILED)
def summary():
    f = VisitFilter.from_args(request.args)
    return jsonify(queries.summary(get_store(), f))


def handle_unexpected(exc):
    logger.error("Unhandled error: %s", exc.original_exception or exc, exc_info=exc.original_exception)
    return jsonify({"message": "Internal server error"}), 500


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(settings=None, store=None):
    """
    Build the app. Without an explicit store one is opened from settings and
    closed again when the interpreter exits.
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.json.sort_keys = False
    app.config["TRACKER_SETTINGS"] = settings

    if store is None:
        store = open_store(settings)
        atexit.register(store.close)
    app.extensions["tracker.store"] = store

    app.register_blueprint(bp)
    app.register_error_handler(InternalServerError, handle_unexpected)
    return app


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings)
    logger.info("Server running on port %d", settings.port)
    # Dev mode, production runs under a WSGI server: tracker.app:create_app()
    app.run(host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
