"""
Manage note categories in the store (rednote.db).
Usage:
  rednote-categories [--db PATH] list
  rednote-categories [--db PATH] add NAME [KEYWORD ...] [--color HEX]
  rednote-categories [--db PATH] delete NAME
  rednote-categories [--db PATH] recategorize
"""
import argparse
import sqlite3

from rednote_sync.config import DB_PATH
from rednote_sync.export import find_category_id
from rednote_sync.models import (
    DEFAULT_COLOR,
    add_category,
    category_keywords,
    delete_category,
    fetch_categories,
    get_connection,
    init_db,
    recategorize_all,
)


def _list(conn: sqlite3.Connection, args) -> int:
    for row in fetch_categories(conn):
        suffix = " (default)" if row["is_default"] else ""
        keywords = ", ".join(category_keywords(row))
        print(f"{row['name']}{suffix}: {keywords}")
    return 0


def _add(conn: sqlite3.Connection, args) -> int:
    try:
        add_category(conn, args.name, args.keywords, args.color)
    except sqlite3.IntegrityError:
        print(f"Category already exists: {args.name}")
        return 1
    moved = recategorize_all(conn) if args.apply else 0
    conn.commit()
    print(f"Added category {args.name}" + (f", {moved} notes moved" if args.apply else ""))
    return 0


def _delete(conn: sqlite3.Connection, args) -> int:
    category_id = find_category_id(conn, args.name)
    if category_id is None or not delete_category(conn, category_id):
        print(f"Cannot delete category: {args.name}")
        return 1
    conn.commit()
    print(f"Deleted category {args.name}; its notes moved to the default category")
    return 0


def _recategorize(conn: sqlite3.Connection, args) -> int:
    moved = recategorize_all(conn)
    conn.commit()
    print(f"Recategorized notes: {moved} moved")
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Manage note categories")
    ap.add_argument("--db", help=f"Note store path (default {DB_PATH})")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List categories and their keywords").set_defaults(func=_list)

    add = sub.add_parser("add", help="Add a keyword category")
    add.add_argument("name")
    add.add_argument("keywords", nargs="*")
    add.add_argument("--color", default=DEFAULT_COLOR, help="Display color, e.g. #FF6B6B")
    add.add_argument("--apply", action="store_true", help="Recategorize stored notes afterwards")
    add.set_defaults(func=_add)

    delete = sub.add_parser("delete", help="Delete a category; its notes move to the default one")
    delete.add_argument("name")
    delete.set_defaults(func=_delete)

    sub.add_parser("recategorize", help="Re-run keyword categorization over every note").set_defaults(func=_recategorize)

    args = ap.parse_args(argv)
    conn = get_connection(args.db or DB_PATH)
    try:
        init_db(conn)
        code = args.func(conn, args)
    finally:
        conn.close()
    if code:
        raise SystemExit(code)
    return code


if __name__ == "__main__":
    main()
