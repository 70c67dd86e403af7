"""
Quick script to print the note store contents per category.
Usage: rednote-stats [--db PATH]
"""
import argparse

from rednote_sync.config import DB_PATH
from rednote_sync.models import get_connection, get_statistics, init_db


def main():
    ap = argparse.ArgumentParser(description="Print note store statistics")
    ap.add_argument("--db", help=f"Note store path (default {DB_PATH})")
    args = ap.parse_args()

    conn = get_connection(args.db or DB_PATH)
    try:
        init_db(conn)
        stats = get_statistics(conn)
        print(f"Total notes: {stats['total_notes']}")
        print(f"Synced today: {stats['today_notes']}")
        print(f"Categories: {stats['categories']}")
        rows = conn.execute("""
            SELECT c.name, c.is_default, COUNT(n.id) AS notes
            FROM categories c
            LEFT JOIN notes n ON n.category_id = c.id
            GROUP BY c.id
            ORDER BY c.sort_order, c.name
        """).fetchall()
        for row in rows:
            suffix = " (default)" if row["is_default"] else ""
            print(f"  {row['name']}{suffix}: {row['notes']}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
