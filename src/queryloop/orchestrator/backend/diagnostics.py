"""Renderers for diagnostic outputs shared by the backends."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(slots=True)
class TimelineEntry:
    """One finished backend call shown on the timeline."""

    kind: str
    trace_id: str
    ok: bool


def render_statistics_line(
    *,
    trace_id: str,
    status: str,
    **details: object,
) -> str:
    payload: dict[str, object] = {
        "trace_id": trace_id,
        "status": status,
        "at": datetime.now(tz=UTC).isoformat(),
        **details,
    }
    return json.dumps(payload, sort_keys=True) + "\n"


def render_timeline(entries: list[TimelineEntry]) -> str:
    """Render calls as an SVG strip, green for success and red for failure."""

    height = 20 * len(entries) + 10
    rects = [
        (
            f'<rect x="10" y="{10 + 20 * n}" width="200" height="16" '
            f'fill="{"#4caf50" if entry.ok else "#f44336"}">'
            f"<title>{entry.kind} {entry.trace_id}</title></rect>"
        )
        for n, entry in enumerate(entries)
    ]
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="220" height="{height}">'
        + "".join(rects)
        + "</svg>\n"
    )
