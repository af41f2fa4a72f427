"""Slug-based identifiers for tasks, agents and workspaces."""

import re
import sqlite3


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate an unused id in ``table`` from a slug, appending a number if needed."""
    base_slug = base_slug or table.rstrip("s")
    candidate = base_slug
    i = 2
    while db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate
