"""
Query composition for the analytics endpoints.

Every operation builds one parameterized statement against site_visits from
a VisitFilter and a store dialect, runs it and returns JSON-ready rows.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime

from .db import TABLE

DEFAULT_DAYS = 30
TOP_PAGES_LIMIT = 10
LISTING_LIMIT = 100
MAX_LIMIT = 1000

LEADING_INT = re.compile(r"\s*[+-]?\d+")

VISIT_FIELDS = ("site", "page", "referrer", "user_agent", "ip_address", "screen")


# -----------------------------------------------------------------------------
# Parameter parsing
# -----------------------------------------------------------------------------
def parse_int(raw, default: int) -> int:
    """
    Leading integer of a query-string value ("12abc" -> 12, "2.5" -> 2),
    `default` when absent or when it does not start with a number.
    """
    if raw is None:
        return default
    match = LEADING_INT.match(str(raw))
    if match is None:
        return default
    return int(match.group(0))


def clamp(value: int, lo: int, hi: int | None = None) -> int:
    value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


@dataclass(frozen=True)
class VisitFilter:
    days: int = DEFAULT_DAYS
    site: str | None = None
    page: str | None = None
    limit: int | None = None
    offset: int = 0

    @classmethod
    def from_args(cls, args, default_limit: int | None = None) -> "VisitFilter":
        """
        Sanitize request args. `limit` is clamped to [1, MAX_LIMIT] and
        `offset` to >= 0; `days` is taken as given, without an upper bound.
        """
        limit = None
        if default_limit is not None:
            limit = clamp(parse_int(args.get("limit"), default_limit), 1, MAX_LIMIT)
        return cls(
            days=parse_int(args.get("days"), DEFAULT_DAYS),
            site=args.get("site") or None,
            page=args.get("page") or None,
            limit=limit,
            offset=clamp(parse_int(args.get("offset"), 0), 0),
        )


@dataclass(frozen=True)
class Visit:
    site: str | None = None
    page: str | None = None
    referrer: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    screen: str | None = None

    @classmethod
    def from_payload(cls, payload, ip_address: str | None) -> "Visit":
        """
        Beacon body -> row values. Nothing is validated: missing fields stay
        NULL and non-string values are stored as their text form.
        """
        if not isinstance(payload, dict):
            payload = {}

        def text(key):
            value = payload.get(key)
            if value is None or isinstance(value, str):
                return value
            return str(value)

        return cls(
            site=text("site"),
            page=text("page"),
            referrer=text("referrer"),
            user_agent=text("userAgent"),
            ip_address=ip_address,
            screen=text("screen"),
        )


# -----------------------------------------------------------------------------
# Query builders
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Query:
    sql: str
    params: tuple


def _where(dialect, f: VisitFilter, site=True, page=False):
    window_sql, window_param = dialect.since(f.days)
    clauses = [window_sql]
    params = [window_param]
    if site and f.site:
        clauses.append(f"site = {dialect.placeholder}")
        params.append(f.site)
    if page and f.page:
        clauses.append(f"page = {dialect.placeholder}")
        params.append(f.page)
    return "WHERE " + "\n  AND ".join(clauses), params


def visits_over_time_query(dialect, f: VisitFilter) -> Query:
    where, params = _where(dialect, f)
    sql = f"""
SELECT DATE(created_at) AS date, COUNT(*) AS visits
FROM {TABLE}
{where}
GROUP BY DATE(created_at)
ORDER BY date ASC
"""
    return Query(sql, tuple(params))


def visits_by_site_query(dialect, f: VisitFilter) -> Query:
    where, params = _where(dialect, f, site=False)
    sql = f"""
SELECT site, COUNT(*) AS visits
FROM {TABLE}
{where}
GROUP BY site
"""
    return Query(sql, tuple(params))


def top_pages_query(dialect, f: VisitFilter) -> Query:
    where, params = _where(dialect, f)
    p = dialect.placeholder
    sql = f"""
SELECT page, COUNT(*) AS visits
FROM {TABLE}
{where}
GROUP BY page
ORDER BY visits DESC
LIMIT {p}
"""
    params.append(f.limit if f.limit is not None else TOP_PAGES_LIMIT)
    return Query(sql, tuple(params))


def list_visits_query(dialect, f: VisitFilter) -> Query:
    where, params = _where(dialect, f, page=True)
    p = dialect.placeholder
    sql = f"""
SELECT id, site, page, referrer, user_agent, ip_address, screen, created_at
FROM {TABLE}
{where}
ORDER BY created_at DESC, id DESC
LIMIT {p} OFFSET {p}
"""
    params.append(f.limit if f.limit is not None else LISTING_LIMIT)
    params.append(f.offset)
    return Query(sql, tuple(params))


def summary_query(dialect, f: VisitFilter) -> Query:
    where, params = _where(dialect, f)
    sql = f"""
SELECT
  COUNT(*) AS total_visits,
  COUNT(DISTINCT site) AS total_sites,
  COUNT(DISTINCT page) AS total_pages,
  COUNT(DISTINCT ip_address) AS unique_visitors
FROM {TABLE}
{where}
"""
    return Query(sql, tuple(params))


def insert_visit_query(dialect, visit: Visit) -> Query:
    p = dialect.placeholder
    sql = f"""
INSERT INTO {TABLE} ({", ".join(VISIT_FIELDS)})
VALUES ({", ".join([p] * len(VISIT_FIELDS))})
"""
    return Query(sql, tuple(getattr(visit, name) for name in VISIT_FIELDS))


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------
def _jsonable(row: dict) -> dict:
    out = {}
    for key, value in row.items():
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        out[key] = value
    return out


def _run(store, query: Query) -> list[dict]:
    return [_jsonable(row) for row in store.fetch_all(query.sql, query.params)]


def record_visit(store, visit: Visit):
    query = insert_visit_query(store.dialect, visit)
    store.execute(query.sql, query.params)


def visits_over_time(store, f: VisitFilter) -> list[dict]:
    return _run(store, visits_over_time_query(store.dialect, f))


def visits_by_site(store, f: VisitFilter) -> list[dict]:
    return _run(store, visits_by_site_query(store.dialect, f))


def top_pages(store, f: VisitFilter) -> list[dict]:
    return _run(store, top_pages_query(store.dialect, f))


def list_visits(store, f: VisitFilter) -> list[dict]:
    return _run(store, list_visits_query(store.dialect, f))


def summary(store, f: VisitFilter) -> dict:
    rows = _run(store, summary_query(store.dialect, f))
    # COUNT without GROUP BY always yields one row
    return rows[0]
