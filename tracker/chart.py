"""
Server-side SVG line chart for the visits-by-site aggregate.
"""
import random
from html import escape

WIDTH = 800
HEIGHT = 400
MARGIN_TOP = 40
MARGIN_RIGHT = 40
MARGIN_BOTTOM = 100
MARGIN_LEFT = 60
GRID_LINES = 5

LINE = "#38bdf8"
GRID = "#334155"
AXIS = "#94a3b8"
TEXT = "#cbd5e1"
BACKGROUND = "#0f172a"

NO_DATA_SVG = (
    f'<svg xmlns="http://www.w3.org/2000/svg" width="{WIDTH}" height="{HEIGHT}" '
    f'viewBox="0 0 {WIDTH} {HEIGHT}">'
    f'<rect width="100%" height="100%" fill="{BACKGROUND}"/>'
    f'<text x="{WIDTH / 2}" y="{HEIGHT / 2}" fill="{AXIS}" font-family="sans-serif" '
    f'font-size="16" text-anchor="middle">No data</text>'
    f"</svg>"
)


def plot_area():
    """
    (left, top, width, height) of the region the series is drawn in.
    """
    return (
        MARGIN_LEFT,
        MARGIN_TOP,
        WIDTH - MARGIN_LEFT - MARGIN_RIGHT,
        HEIGHT - MARGIN_TOP - MARGIN_BOTTOM,
    )


def point_positions(counts):
    """
    Pixel coordinates for each count: equal x spacing, y linear from 0 to max.
    """
    left, top, width, height = plot_area()
    n = len(counts)
    max_c = max(counts) or 1

    if n == 1:
        xs = [left]
    else:
        xs = [left + i * (width / (n - 1)) for i in range(n)]

    ys = [top + height - (c / max_c) * height for c in counts]
    return list(zip(xs, ys))


def spline_path(points):
    """
    Cubic path through the points; both control points sit on the horizontal
    midpoint, each at its own end's height.
    """
    x0, y0 = points[0]
    d_parts = [f"M{x0:.1f},{y0:.1f}"]
    for (px, py), (x, y) in zip(points, points[1:]):
        mx = (px + x) / 2
        d_parts.append(f"C{mx:.1f},{py:.1f} {mx:.1f},{y:.1f} {x:.1f},{y:.1f}")
    return " ".join(d_parts)


def _tick_label(value):
    # thousands separators, at most one decimal, never exponent notation
    return f"{value:,.1f}".rstrip("0").rstrip(".")


def _label(value):
    return escape("(none)" if value is None else str(value))


def render_site_chart(rows, rng=None):
    """
    rows: [{"site": ..., "visits": ...}] as returned by queries.visits_by_site.
    The order of the rows is shuffled on every call.
    """
    if not rows:
        return NO_DATA_SVG

    rows = list(rows)
    (rng or random).shuffle(rows)

    counts = [int(row["visits"] or 0) for row in rows]
    max_c = max(counts) or 1
    points = point_positions(counts)
    left, top, width, height = plot_area()
    bottom = top + height

    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{WIDTH}" height="{HEIGHT}" '
        f'viewBox="0 0 {WIDTH} {HEIGHT}" font-family="sans-serif">',
        "<defs>",
        '<filter id="glow" x="-50%" y="-50%" width="200%" height="200%">',
        '<feGaussianBlur stdDeviation="3" result="blur"/>',
        '<feMerge><feMergeNode in="blur"/><feMergeNode in="SourceGraphic"/></feMerge>',
        "</filter>",
        "</defs>",
        f'<rect width="100%" height="100%" fill="{BACKGROUND}"/>',
    ]

    # gridlines + y ticks
    for i in range(GRID_LINES + 1):
        y = bottom - (i / GRID_LINES) * height
        tick = max_c * i / GRID_LINES
        parts.append(
            f'<line x1="{left}" y1="{y:.1f}" x2="{left + width}" y2="{y:.1f}" '
            f'stroke="{GRID}" stroke-width="1"/>'
        )
        parts.append(
            f'<text x="{left - 8}" y="{y + 4:.1f}" fill="{AXIS}" font-size="11" '
            f'text-anchor="end">{_tick_label(tick)}</text>'
        )

    # axes
    parts.append(
        f'<line x1="{left}" y1="{top}" x2="{left}" y2="{bottom}" stroke="{AXIS}" stroke-width="1.5"/>'
    )
    parts.append(
        f'<line x1="{left}" y1="{bottom}" x2="{left + width}" y2="{bottom}" '
        f'stroke="{AXIS}" stroke-width="1.5"/>'
    )

    parts.append(
        f'<path d="{spline_path(points)}" fill="none" stroke="{LINE}" stroke-width="3" '
        f'stroke-linecap="round" filter="url(#glow)"/>'
    )

    for row, count, (x, y) in zip(rows, counts, points):
        parts.append(f'<circle cx="{x:.1f}" cy="{y:.1f}" r="4" fill="{LINE}"/>')
        parts.append(
            f'<text x="{x:.1f}" y="{y - 10:.1f}" fill="{TEXT}" font-size="12" '
            f'text-anchor="middle">{count}</text>'
        )
        label_y = bottom + 16
        parts.append(
            f'<text x="{x:.1f}" y="{label_y}" fill="{TEXT}" font-size="11" text-anchor="end" '
            f'transform="rotate(-45 {x:.1f} {label_y})">{_label(row.get("site"))}</text>'
        )

    parts.append("</svg>")
    return "\n".join(parts)
