"""
Export the note store (rednote.db) to CSV with optional filters.
Usage:
  rednote-export [--output FILE] [--category NAME] [--search TEXT] [--since DATE]
"""
import argparse
import csv
import json
import sqlite3
from pathlib import Path

from rednote_sync.config import DB_PATH
from rednote_sync.models import fetch_categories, fetch_notes, get_connection, init_db

COLUMNS = ["id", "title", "content", "original_url", "image_url", "author_name", "tags", "category", "synced_at"]


def find_category_id(conn: sqlite3.Connection, name: str) -> str | None:
    for row in fetch_categories(conn):
        if row["name"] == name:
            return row["id"]
    return None


def export_csv(
    conn: sqlite3.Connection,
    output_path: Path,
    category: str | None = None,
    search: str | None = None,
    since: str | None = None,
) -> int:
    """Write matching notes to output_path. Returns the number of rows written (no file when zero)."""
    category_id = None
    if category:
        category_id = find_category_id(conn, category)
        if category_id is None:
            raise ValueError(f"unknown category: {category}")
    rows = fetch_notes(conn, category_id=category_id, search=search)
    if since:
        rows = [row for row in rows if (row["synced_at"] or "")[:10] >= since]
    if not rows:
        return 0
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(COLUMNS)
        for row in rows:
            writer.writerow([
                row["id"],
                row["title"],
                row["content"] or "",
                row["original_url"],
                row["image_url"] or "",
                row["author_name"] or "",
                " ".join(json.loads(row["tags"] or "[]")),
                row["category_name"] or "",
                row["synced_at"],
            ])
    return len(rows)


def main():
    ap = argparse.ArgumentParser(description="Export synced notes to CSV")
    ap.add_argument("--output", "-o", help="Output CSV path")
    ap.add_argument("--db", help=f"Note store path (default {DB_PATH})")
    ap.add_argument("--category", "-c", help="Only notes in this category (by name)")
    ap.add_argument("--search", "-s", help="Only notes whose title contains this text")
    ap.add_argument("--since", help="Only notes synced on or after this date (YYYY-MM-DD)")
    args = ap.parse_args()

    out = Path(args.output or "rednote_export.csv")
    conn = get_connection(args.db or DB_PATH)
    try:
        init_db(conn)
        try:
            n = export_csv(conn, out, category=args.category, search=args.search, since=args.since)
        except ValueError as e:
            ap.error(str(e))
        print(f"Exported {n} notes to {out}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
