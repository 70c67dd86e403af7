"""
Note store SQLite schema (WAL mode).
rednote.db: notes (one row per collected note) and categories (keyword lists for auto-categorization).
"""
import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from rednote_sync.config import DB_PATH
from rednote_sync.records import NoteRecord

DEFAULT_CATEGORY_NAME = "未分类"
DEFAULT_COLOR = "#FF6B35"

# (name, keywords, color hex); the catch-all default category is seeded last
DEFAULT_CATEGORIES = [
    ("美妆护肤", ["护肤", "化妆", "口红", "面膜", "精华", "防晒"], "#FF6B94"),
    ("穿搭时尚", ["穿搭", "时尚", "搭配", "服装", "鞋子", "包包"], "#6B73FF"),
    ("美食料理", ["美食", "料理", "菜谱", "烘焙", "甜品", "餐厅"], "#FF9F40"),
    ("旅行出游", ["旅行", "景点", "攻略", "酒店", "机票", "自由行"], "#4ECDC4"),
    ("生活日常", ["生活", "日常", "家居", "收纳", "清洁", "健康"], "#95E1D3"),
    ("学习工作", ["学习", "工作", "效率", "技能", "读书", "职场"], "#A8E6CF"),
]


def get_connection(db_path: Path | str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create notes and categories tables; seed default categories on an empty store."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            color_hex TEXT NOT NULL,
            keywords TEXT NOT NULL DEFAULT '[]',
            is_default INTEGER NOT NULL DEFAULT 0,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT,
            image_url TEXT,
            original_url TEXT NOT NULL,
            author_name TEXT,
            author_avatar TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            category_id TEXT REFERENCES categories(id),
            collect_date TEXT NOT NULL,
            synced_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_category ON notes(category_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_synced_at ON notes(synced_at)")
    if conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0] == 0:
        for order, (name, keywords, color) in enumerate(DEFAULT_CATEGORIES):
            add_category(conn, name, keywords, color, sort_order=order)
        add_category(conn, DEFAULT_CATEGORY_NAME, [], "#D3D3D3", is_default=True, sort_order=len(DEFAULT_CATEGORIES))
    conn.commit()


# --------------- Categories ---------------
def add_category(
    conn: sqlite3.Connection,
    name: str,
    keywords: list[str] | None = None,
    color_hex: str = DEFAULT_COLOR,
    *,
    is_default: bool = False,
    sort_order: int | None = None,
) -> str:
    """Insert a category; returns its id. Raises sqlite3.IntegrityError on a duplicate name."""
    if sort_order is None:
        row = conn.execute("SELECT COALESCE(MAX(sort_order), -1) + 1 FROM categories").fetchone()
        sort_order = row[0]
    category_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO categories (id, name, color_hex, keywords, is_default, sort_order)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (category_id, name, color_hex, json.dumps(keywords or [], ensure_ascii=False), int(is_default), sort_order),
    )
    return category_id


def fetch_categories(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM categories ORDER BY sort_order, name").fetchall()


def get_default_category_id(conn: sqlite3.Connection) -> str | None:
    row = conn.execute("SELECT id FROM categories WHERE is_default = 1 ORDER BY sort_order LIMIT 1").fetchone()
    return row["id"] if row else None


def category_keywords(row: sqlite3.Row) -> list[str]:
    try:
        keywords = json.loads(row["keywords"] or "[]")
    except json.JSONDecodeError:
        return []
    return [k for k in keywords if isinstance(k, str) and k.strip()]


def delete_category(conn: sqlite3.Connection, category_id: str) -> bool:
    """Delete a category and move its notes to the default one. The default category cannot be deleted."""
    row = conn.execute("SELECT is_default FROM categories WHERE id = ?", (category_id,)).fetchone()
    if row is None or row["is_default"]:
        return False
    conn.execute("UPDATE notes SET category_id = ? WHERE category_id = ?", (get_default_category_id(conn), category_id))
    conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
    return True


# --------------- Notes ---------------
def categorize_note(conn: sqlite3.Connection, record: NoteRecord) -> str | None:
    """First non-default category with a keyword found in title/content/author/tags; else the default."""
    text = " ".join(v for v in (record.title, record.content, record.author_name) if v)
    haystack = (text + " " + " ".join(record.tags)).lower()
    for row in fetch_categories(conn):
        if row["is_default"]:
            continue
        if any(keyword.lower() in haystack for keyword in category_keywords(row)):
            return row["id"]
    return get_default_category_id(conn)


def _record_from_row(row: sqlite3.Row) -> NoteRecord:
    return NoteRecord(
        id=row["id"],
        title=row["title"],
        url=row["original_url"],
        content=row["content"],
        image_url=row["image_url"],
        author_name=row["author_name"],
        author_avatar=row["author_avatar"],
        tags=tuple(json.loads(row["tags"] or "[]")),
    )


def upsert_note(conn: sqlite3.Connection, record: NoteRecord, category_id: str | None = None) -> str | None:
    """Insert or update a note by id. Returns the category id the note ends up in."""
    if category_id is None:
        category_id = categorize_note(conn, record)
    now = datetime.now().isoformat()
    conn.execute(
        """
        INSERT INTO notes (
            id, title, content, image_url, original_url, author_name, author_avatar,
            tags, category_id, collect_date, synced_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            title=excluded.title,
            content=excluded.content,
            image_url=excluded.image_url,
            original_url=excluded.original_url,
            author_name=excluded.author_name,
            author_avatar=excluded.author_avatar,
            tags=excluded.tags,
            category_id=excluded.category_id,
            synced_at=excluded.synced_at
        """,
        (
            record.id, record.title, record.content, record.image_url, record.url,
            record.author_name, record.author_avatar,
            json.dumps(list(record.tags), ensure_ascii=False),
            category_id, now, now,
        ),
    )
    return category_id


def note_exists(conn: sqlite3.Connection, note_id: str) -> bool:
    return conn.execute("SELECT 1 FROM notes WHERE id = ?", (note_id,)).fetchone() is not None


def fetch_notes(conn: sqlite3.Connection, category_id: str | None = None, search: str | None = None) -> list[sqlite3.Row]:
    """
    Notes, most recently synced first. Filtering by the default category means no category filter.
    search matches the title (substring).
    """
    where = []
    params: list = []
    if category_id is not None and category_id != get_default_category_id(conn):
        where.append("n.category_id = ?")
        params.append(category_id)
    if search:
        where.append("instr(n.title, ?) > 0")
        params.append(search)
    sql = """
        SELECT n.*, c.name AS category_name
        FROM notes n
        LEFT JOIN categories c ON c.id = n.category_id
    """
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY n.synced_at DESC"
    return conn.execute(sql, params).fetchall()


def recategorize_all(conn: sqlite3.Connection) -> int:
    """Re-run keyword categorization over every stored note. Returns the number of notes that moved."""
    moved = 0
    for row in conn.execute("SELECT * FROM notes").fetchall():
        category_id = categorize_note(conn, _record_from_row(row))
        if category_id != row["category_id"]:
            conn.execute("UPDATE notes SET category_id = ? WHERE id = ?", (category_id, row["id"]))
            moved += 1
    return moved


def get_statistics(conn: sqlite3.Connection) -> dict:
    total = conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]
    categories = conn.execute("SELECT COUNT(*) FROM categories WHERE is_default = 0").fetchone()[0]
    today = datetime.now().date().isoformat()
    today_notes = conn.execute("SELECT COUNT(*) FROM notes WHERE substr(synced_at, 1, 10) = ?", (today,)).fetchone()[0]
    return {"total_notes": total, "categories": categories, "today_notes": today_notes}


class NoteStore:
    """Storage collaborator for SyncController: save_record / record_exists over one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save_record(self, record: NoteRecord) -> str | None:
        try:
            category_id = upsert_note(self.conn, record)
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        return category_id

    def record_exists(self, note_id: str) -> bool:
        return note_exists(self.conn, note_id)
