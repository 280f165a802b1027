"""Shared test helpers for tracker tests."""


def insert_aged(store, site, page, days_ago, ip="10.0.0.1"):
    """Insert a row whose created_at lies `days_ago` days in the past."""
    store.execute(
        "INSERT INTO site_visits (site, page, ip_address, created_at) "
        "VALUES (?, ?, ?, datetime('now', ?))",
        (site, page, ip, f"-{days_ago} days"),
    )
