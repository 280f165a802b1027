"""Tests for tracker.app — HTTP surface, ingestion, error reporting, CORS."""

from unittest.mock import MagicMock

import pytest
from werkzeug.test import EnvironBuilder
from flask import Flask, request

from tracker.app import client_ip, create_app, pick_cors_origin
from tracker.config import Settings
from tracker.db import SQLiteDialect


def track(client, ip, **body):
    return client.post("/track", json=body, headers={"X-Forwarded-For": ip})


@pytest.fixture
def failing_store():
    store = MagicMock()
    store.dialect = SQLiteDialect()
    store.fetch_all.side_effect = RuntimeError("connection refused by db-host:5432")
    store.execute.side_effect = RuntimeError("connection refused by db-host:5432")
    return store


class TestHealth:
    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert r.get_json() == {"message": "Tracking server running"}

    def test_healthz(self, client):
        assert client.get("/healthz").data == b"ok"


class TestTrack:
    def test_insert_then_list(self, client):
        r = client.post(
            "/track",
            json={
                "site": "a",
                "page": "/x",
                "referrer": "https://ref.example",
                "userAgent": "Mozilla/5.0",
                "screen": "1920x1080",
            },
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )
        assert r.status_code == 200
        assert r.get_json() == {"message": "Tracked"}

        rows = client.get("/analytics/visits?days=1").get_json()
        assert len(rows) == 1
        row = rows[0]
        assert row["site"] == "a"
        assert row["page"] == "/x"
        assert row["referrer"] == "https://ref.example"
        assert row["user_agent"] == "Mozilla/5.0"
        assert row["screen"] == "1920x1080"
        assert row["ip_address"] == "203.0.113.7"
        assert row["id"] is not None
        assert row["created_at"]

    def test_peer_address_fallback(self, client):
        client.post("/track", json={"site": "a"})
        (row,) = client.get("/analytics/visits").get_json()
        assert row["ip_address"] == "127.0.0.1"

    def test_text_plain_beacon_body(self, client):
        r = client.post(
            "/track",
            data='{"site": "beacon", "page": "/p"}',
            content_type="text/plain;charset=UTF-8",
        )
        assert r.status_code == 200
        (row,) = client.get("/analytics/visits").get_json()
        assert row["site"] == "beacon"

    def test_garbage_body_stored_as_nulls(self, client):
        r = client.post("/track", data="not json", content_type="application/json")
        assert r.status_code == 200
        (row,) = client.get("/analytics/visits").get_json()
        assert row["site"] is None
        assert row["page"] is None

    def test_store_failure_is_generic(self, settings, failing_store):
        client = create_app(settings, store=failing_store).test_client()
        r = client.post("/track", json={"site": "a"})
        assert r.status_code == 500
        assert r.get_json() == {"message": "Tracking failed"}


class TestAnalytics:
    @pytest.fixture
    def seeded(self, client):
        for i in range(3):
            track(client, f"1.1.1.{i}", site="a", page="/x")
        track(client, "2.2.2.2", site="b", page="/y")
        return client

    def test_by_site(self, seeded):
        rows = seeded.get("/analytics/by-site?days=1").get_json()
        assert {r["site"]: r["visits"] for r in rows} == {"a": 3, "b": 1}

    def test_top_pages_limit(self, seeded):
        rows = seeded.get("/analytics/top-pages?days=1&limit=1").get_json()
        assert rows == [{"page": "/x", "visits": 3}]

    def test_top_pages_limit_zero_clamps_to_one(self, seeded):
        rows = seeded.get("/analytics/top-pages?limit=0").get_json()
        assert len(rows) == 1

    def test_top_pages_site_filter(self, seeded):
        rows = seeded.get("/analytics/top-pages?site=b").get_json()
        assert rows == [{"page": "/y", "visits": 1}]

    def test_summary(self, seeded):
        row = seeded.get("/analytics/summary?days=1").get_json()
        assert row["total_visits"] == 4
        assert row["total_sites"] == 2
        assert row["total_pages"] == 2
        assert row["unique_visitors"] <= row["total_visits"]
        assert list(row) == ["total_visits", "total_sites", "total_pages", "unique_visitors"]

    def test_summary_site_filter(self, seeded):
        row = seeded.get("/analytics/summary?site=a").get_json()
        assert row["total_visits"] == 3
        assert row["total_sites"] == 1
        assert row["unique_visitors"] == 3

    def test_visits_over_time(self, seeded):
        rows = seeded.get("/analytics/visits-over-time").get_json()
        assert len(rows) == 1
        assert rows[0]["visits"] == 4
        assert set(rows[0]) == {"date", "visits"}

    def test_listing_pagination(self, seeded):
        rows = seeded.get("/analytics/visits?limit=2&offset=-5").get_json()
        assert len(rows) == 2
        rows = seeded.get("/analytics/visits?limit=abc&offset=3").get_json()
        assert len(rows) == 1
        rows = seeded.get("/analytics/visits?site=a&page=/x").get_json()
        assert len(rows) == 3

    def test_large_days_accepted(self, seeded):
        r = seeded.get("/analytics/summary?days=99999")
        assert r.status_code == 200
        assert r.get_json()["total_visits"] == 4

    def test_days_past_calendar_range_still_counts_rows(self, seeded):
        r = seeded.get("/analytics/summary?days=10000000")
        assert r.status_code == 200
        assert r.get_json()["total_visits"] == 4

    def test_numeric_prefix_params(self, seeded):
        rows = seeded.get("/analytics/top-pages?limit=1abc&days=2.5").get_json()
        assert rows == [{"page": "/x", "visits": 3}]

    def test_empty_results_are_not_errors(self, client):
        assert client.get("/analytics/by-site").get_json() == []
        assert client.get("/analytics/top-pages").get_json() == []
        assert client.get("/analytics/visits").get_json() == []
        assert client.get("/analytics/visits-over-time").get_json() == []

    @pytest.mark.parametrize("path", [
        "/analytics/visits-over-time",
        "/analytics/by-site",
        "/analytics/top-pages",
        "/analytics/visits",
        "/analytics/summary",
    ])
    def test_store_failure_is_generic(self, settings, failing_store, path):
        client = create_app(settings, store=failing_store).test_client()
        r = client.get(path)
        assert r.status_code == 500
        assert r.get_json() == {"message": "Failed to fetch analytics"}
        assert b"db-host" not in r.data


class TestChartEndpoint:
    def test_no_data_placeholder(self, client):
        from tracker.chart import NO_DATA_SVG

        r = client.get("/analytics/by-site/svg")
        assert r.status_code == 200
        assert r.mimetype == "image/svg+xml"
        assert r.get_data(as_text=True) == NO_DATA_SVG

    def test_chart(self, client):
        track(client, "1.1.1.1", site="a", page="/x")
        track(client, "1.1.1.2", site="b", page="/x")
        r = client.get("/analytics/by-site/svg?days=1")
        assert r.status_code == 200
        body = r.get_data(as_text=True)
        assert body.count("<circle") == 2

    def test_failure_reported_as_json(self, settings, failing_store):
        client = create_app(settings, store=failing_store).test_client()
        r = client.get("/analytics/by-site/svg")
        assert r.status_code == 500
        assert r.is_json
        assert r.get_json() == {"message": "Failed to generate chart"}


class TestClientIp:
    def ip_for(self, headers, remote_addr="192.0.2.1"):
        app = Flask(__name__)
        builder = EnvironBuilder(headers=headers, environ_base={"REMOTE_ADDR": remote_addr})
        with app.request_context(builder.get_environ()):
            return client_ip(request)

    def test_first_forwarded_hop(self):
        assert self.ip_for({"X-Forwarded-For": " 198.51.100.4 , 10.0.0.1"}) == "198.51.100.4"

    def test_empty_header_falls_back(self):
        assert self.ip_for({"X-Forwarded-For": ""}) == "192.0.2.1"

    def test_missing_header_falls_back(self):
        assert self.ip_for({}) == "192.0.2.1"


class TestCors:
    def test_pick_origin(self):
        assert pick_cors_origin("https://a.example", ["*"]) == "https://a.example"
        assert pick_cors_origin(None, ["*"]) == "*"
        assert pick_cors_origin("https://a.example", ["https://a.example"]) == "https://a.example"
        assert pick_cors_origin("https://evil.example", ["https://a.example"]) is None
        assert pick_cors_origin(None, ["https://a.example"]) is None

    def test_headers_on_allowed_origin(self, client):
        r = client.get("/", headers={"Origin": "https://site.example"})
        assert r.headers["Access-Control-Allow-Origin"] == "https://site.example"
        assert r.headers["Vary"] == "Origin"

    def test_preflight(self, client):
        r = client.options(
            "/track",
            headers={
                "Origin": "https://site.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )
        assert r.status_code == 200
        assert r.headers["Access-Control-Allow-Methods"] == "POST"

    def test_disallowed_origin(self, tmp_path):
        settings = Settings(
            sqlite_path=str(tmp_path / "cors.sqlite3"),
            cors_allow_origins=["https://only.example"],
        )
        client = create_app(settings).test_client()
        r = client.get("/", headers={"Origin": "https://other.example"})
        assert "Access-Control-Allow-Origin" not in r.headers
