"""Rendering of listings as table, JSON or CSV."""

import csv
import io
import json
from collections.abc import Sequence
from typing import Any

OUTPUT_FORMATS = ("table", "json", "csv")


def human_size(size_bytes: float) -> str:
    """Size in ``du -h`` style: 512B, 4.0K, 1.5M, 2.0G."""
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            if unit == "B":
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def render_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    """Fixed-width text table with a header underline."""
    cells = [[str(v) for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    lines = [
        "  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip(),
        "  ".join("-" * w for w in widths),
    ]
    for row in cells:
        lines.append("  ".join(v.ljust(w) for v, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def render_records(records: Sequence[dict[str, Any]], keys: Sequence[str], fmt: str) -> str:
    """Render dictionaries with the given keys in one of OUTPUT_FORMATS.

    Raises:
        ValueError: If ``fmt`` is not a known format
    """
    if fmt == "json":
        return json.dumps([{k: r.get(k) for k in keys} for r in records], indent=2)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(keys), extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        writer.writerows(records)
        return buffer.getvalue().rstrip("\n")
    if fmt == "table":
        return render_table([k.upper() for k in keys], [[r.get(k, "") for k in keys] for r in records])
    raise ValueError(f"Unknown output format '{fmt}' (expected one of: {', '.join(OUTPUT_FORMATS)})")
