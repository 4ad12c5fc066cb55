"""Collation rewrite for SQL dumps moving to older database engines.

MariaDB 11 dumps default to ``utf8mb4_uca1400_ai_ci``, which MySQL 8 and
older MariaDB releases reject. The dump is rewritten line by line through
gzip so memory use does not grow with the dump size.
"""

import gzip
from pathlib import Path

DEFAULT_REPLACEMENTS: dict[str, str] = {
    "utf8mb4_uca1400_ai_ci": "utf8mb4_unicode_ci",
}


def normalize_collation(
    source: Path,
    target: Path,
    replacements: dict[str, str] | None = None,
) -> int:
    """Copy a gzip SQL dump, replacing collation names.

    Args:
        source: gzip-compressed SQL dump
        target: Where to write the rewritten, gzip-compressed dump
        replacements: Collation name -> replacement

    Returns:
        Number of occurrences replaced
    """
    pairs = [
        (old.encode(), new.encode())
        for old, new in (replacements or DEFAULT_REPLACEMENTS).items()
    ]
    count = 0
    tmp = target.with_name(target.name + ".partial")
    with gzip.open(source, "rb") as src, gzip.open(tmp, "wb") as dst:
        for line in src:
            for old, new in pairs:
                if old in line:
                    count += line.count(old)
                    line = line.replace(old, new)
            dst.write(line)
    tmp.replace(target)
    return count
