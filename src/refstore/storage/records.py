"""SQLite persistence for records, creators, tags and collections."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

from refstore import itemtypes
from refstore.errors import RecordNotFoundError
from refstore.models import AttachmentInfo, Collection, Creator, CreatorRef, LinkMode, Record, Tag
from refstore.notify.notifier import Notifier, NotifierState
from refstore.storage.paths import generate_key

LOGGER = logging.getLogger(__name__)


class SQLiteRecordStore:
    """Persistence layer for records and their relations.

    Every mutation runs inside :meth:`transaction`. The outermost transaction
    opens a notifier queue, so observers only hear about changes once they are
    committed and never hear about rolled-back ones.
    """

    def __init__(self, db_path: Path, *, notifier: Optional[Notifier] = None) -> None:
        self.db_path = Path(db_path)
        self.notifier = notifier
        # Transactions are managed explicitly with BEGIN/SAVEPOINT
        self._conn = sqlite3.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._depth = 0
        if notifier is not None and notifier.record_exists is None:
            notifier.record_exists = self.record_exists
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; nested calls become savepoints."""
        savepoint = f"sp{self._depth}"
        pending = None
        if self._depth == 0:
            self._conn.execute("BEGIN")
            if self.notifier is not None:
                # A caller's open span survives our rollback
                if self.notifier.state is not NotifierState.IDLE:
                    pending = self.notifier.snapshot()
                self.notifier.begin()
        else:
            self._conn.execute(f"SAVEPOINT {savepoint}")
            if self.notifier is not None:
                pending = self.notifier.snapshot()
        self._depth += 1

        try:
            yield self._conn
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.execute("ROLLBACK")
                if self.notifier is not None:
                    self.notifier.rollback(pending)
            else:
                self._conn.execute(f"ROLLBACK TO {savepoint}")
                self._conn.execute(f"RELEASE {savepoint}")
                if pending is not None:
                    self.notifier.restore(pending)
            raise

        self._depth -= 1
        if self._depth == 0:
            self._conn.execute("COMMIT")
            if self.notifier is not None:
                self.notifier.commit()
        else:
            self._conn.execute(f"RELEASE {savepoint}")

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS items (
                    id INTEGER PRIMARY KEY,
                    key TEXT NOT NULL UNIQUE,
                    item_type TEXT NOT NULL,
                    library_id INTEGER,
                    parent_id INTEGER,
                    date_added TEXT DEFAULT CURRENT_TIMESTAMP,
                    date_modified TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY(parent_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS items_modified
                AFTER UPDATE ON items
                BEGIN
                    UPDATE items SET date_modified = CURRENT_TIMESTAMP WHERE id = NEW.id;
                END;
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_parent_id ON items(parent_id)")
            conn.execute("CREATE TABLE IF NOT EXISTS deleted_keys (key TEXT PRIMARY KEY)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_data (
                    item_id INTEGER NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY(item_id, field),
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_notes (
                    item_id INTEGER PRIMARY KEY,
                    note TEXT NOT NULL,
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_attachments (
                    item_id INTEGER PRIMARY KEY,
                    link_mode INTEGER NOT NULL,
                    path TEXT,
                    mime_type TEXT,
                    charset TEXT,
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS creators (
                    id INTEGER PRIMARY KEY,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    field_mode INTEGER NOT NULL DEFAULT 0,
                    library_id INTEGER
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_creators (
                    item_id INTEGER NOT NULL,
                    creator_id INTEGER NOT NULL,
                    creator_type TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    PRIMARY KEY(item_id, order_index),
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE,
                    FOREIGN KEY(creator_id) REFERENCES creators(id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tags (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    type INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(name, type)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_tags (
                    item_id INTEGER NOT NULL,
                    tag_id INTEGER NOT NULL,
                    PRIMARY KEY(item_id, tag_id),
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE,
                    FOREIGN KEY(tag_id) REFERENCES tags(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_related (
                    item_id INTEGER NOT NULL,
                    related_id INTEGER NOT NULL,
                    PRIMARY KEY(item_id, related_id),
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collections (
                    id INTEGER PRIMARY KEY,
                    key TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    parent_id INTEGER,
                    library_id INTEGER,
                    FOREIGN KEY(parent_id) REFERENCES collections(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collection_items (
                    collection_id INTEGER NOT NULL,
                    item_id INTEGER NOT NULL,
                    order_index INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY(collection_id, item_id),
                    FOREIGN KEY(collection_id) REFERENCES collections(id) ON DELETE CASCADE,
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                )
                """
            )

    # Records

    def _key_taken(self, key: str) -> bool:
        row = self._conn.execute(
            """
            SELECT 1 FROM items WHERE key = ?
            UNION SELECT 1 FROM deleted_keys WHERE key = ?
            UNION SELECT 1 FROM collections WHERE key = ?
            """,
            (key, key, key),
        ).fetchone()
        return row is not None

    def _new_key(self) -> str:
        while True:
            key = generate_key()
            if not self._key_taken(key):
                return key

    def new_record(self, item_type: str, library_id: Optional[int] = None) -> Record:
        """Return an unsaved record with a fresh, never-used key."""
        return Record(key=self._new_key(), item_type=item_type, library_id=library_id)

    def save(self, record: Record) -> int:
        """Insert or update ``record`` and return its id."""
        with self.transaction() as conn:
            if record.id is None:
                record.id = conn.execute(
                    "INSERT INTO items(key, item_type, library_id, parent_id) VALUES (?, ?, ?, ?)",
                    (record.key, record.item_type, record.library_id, record.parent_id),
                ).lastrowid
                event = "add"
            else:
                cursor = conn.execute(
                    "UPDATE items SET item_type = ?, library_id = ?, parent_id = ? WHERE id = ?",
                    (record.item_type, record.library_id, record.parent_id, record.id),
                )
                if cursor.rowcount == 0:
                    raise RecordNotFoundError(f"Record {record.id} does not exist")
                event = "modify"

            conn.execute("DELETE FROM item_data WHERE item_id = ?", (record.id,))
            conn.executemany(
                "INSERT INTO item_data(item_id, field, value) VALUES (?, ?, ?)",
                [(record.id, name, value) for name, value in record.fields.items() if value],
            )

            if record.note is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO item_notes(item_id, note) VALUES (?, ?)",
                    (record.id, record.note),
                )
            else:
                conn.execute("DELETE FROM item_notes WHERE item_id = ?", (record.id,))

            if record.attachment is not None:
                info = record.attachment
                conn.execute(
                    """
                    INSERT OR REPLACE INTO item_attachments(item_id, link_mode, path, mime_type, charset)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (record.id, int(info.link_mode), info.path, info.mime_type, info.charset),
                )
            else:
                conn.execute("DELETE FROM item_attachments WHERE item_id = ?", (record.id,))

            conn.execute("DELETE FROM item_creators WHERE item_id = ?", (record.id,))
            conn.executemany(
                """
                INSERT INTO item_creators(item_id, creator_id, creator_type, order_index)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (record.id, ref.creator_id, ref.creator_type, index)
                    for index, ref in enumerate(record.creators)
                ],
            )

            conn.execute("DELETE FROM item_related WHERE item_id = ?", (record.id,))
            conn.executemany(
                "INSERT INTO item_related(item_id, related_id) VALUES (?, ?)",
                [(record.id, related_id) for related_id in sorted(record.related)],
            )

            self._notify(event, "item", record.id)
            if record.parent_id is not None:
                self._notify("modify", "item", record.parent_id)
        return record.id

    def get(self, record_id: int) -> Optional[Record]:
        row = self._conn.execute("SELECT * FROM items WHERE id = ?", (record_id,)).fetchone()
        return self._load(row) if row else None

    def get_by_key(self, key: str, library_id: Optional[int] = None) -> Optional[Record]:
        row = self._conn.execute(
            "SELECT * FROM items WHERE key = ? AND library_id IS ?", (key, library_id)
        ).fetchone()
        return self._load(row) if row else None

    def exists(self, record_id: int) -> bool:
        row = self._conn.execute("SELECT 1 FROM items WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def erase(self, record_id: int) -> None:
        """Delete a record and, first, all of its children."""
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} does not exist")

        with self.transaction() as conn:
            for child in self.children(record_id):
                self.erase(child.id)
            conn.execute("DELETE FROM item_related WHERE related_id = ?", (record_id,))
            conn.execute("DELETE FROM items WHERE id = ?", (record_id,))
            conn.execute("INSERT OR IGNORE INTO deleted_keys(key) VALUES (?)", (record.key,))
            self._notify(
                "delete",
                "item",
                record_id,
                {record_id: {"key": record.key, "libraryID": record.library_id}},
            )
            if record.parent_id is not None:
                self._notify("modify", "item", record.parent_id)

    def children(self, parent_id: int, item_type: Optional[str] = None) -> List[Record]:
        query = "SELECT * FROM items WHERE parent_id = ?"
        params: list = [parent_id]
        if item_type is not None:
            query += " AND item_type = ?"
            params.append(item_type)
        rows = self._conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._load(row) for row in rows]

    def list_records(self, item_type: Optional[str] = None) -> List[Record]:
        if item_type is None:
            rows = self._conn.execute("SELECT * FROM items ORDER BY id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM items WHERE item_type = ? ORDER BY id", (item_type,)
            ).fetchall()
        return [self._load(row) for row in rows]

    def list_attachments(self) -> List[Record]:
        return self.list_records("attachment")

    def _load(self, row: sqlite3.Row) -> Record:
        record_id = row["id"]
        record = Record(
            key=row["key"],
            item_type=row["item_type"],
            id=record_id,
            library_id=row["library_id"],
            parent_id=row["parent_id"],
        )
        record.fields = {
            data["field"]: data["value"]
            for data in self._conn.execute(
                "SELECT field, value FROM item_data WHERE item_id = ?", (record_id,)
            )
        }
        note = self._conn.execute(
            "SELECT note FROM item_notes WHERE item_id = ?", (record_id,)
        ).fetchone()
        if note:
            record.note = note["note"]
        attachment = self._conn.execute(
            "SELECT * FROM item_attachments WHERE item_id = ?", (record_id,)
        ).fetchone()
        if attachment:
            record.attachment = AttachmentInfo(
                link_mode=LinkMode(attachment["link_mode"]),
                path=attachment["path"],
                mime_type=attachment["mime_type"],
                charset=attachment["charset"],
            )
        record.creators = [
            CreatorRef(creator_id=ref["creator_id"], creator_type=ref["creator_type"])
            for ref in self._conn.execute(
                """
                SELECT creator_id, creator_type FROM item_creators
                WHERE item_id = ? ORDER BY order_index
                """,
                (record_id,),
            )
        ]
        record.related = {
            related["related_id"]
            for related in self._conn.execute(
                "SELECT related_id FROM item_related WHERE item_id = ?", (record_id,)
            )
        }
        return record

    # Creators

    def find_creators(
        self, first_name: str, last_name: str, field_mode: int, library_id: Optional[int] = None
    ) -> List[int]:
        rows = self._conn.execute(
            """
            SELECT id FROM creators
            WHERE first_name = ? AND last_name = ? AND field_mode = ? AND library_id IS ?
            ORDER BY id
            """,
            (first_name, last_name, field_mode, library_id),
        ).fetchall()
        return [row["id"] for row in rows]

    def add_creator(self, creator: Creator) -> int:
        with self.transaction() as conn:
            creator.id = conn.execute(
                """
                INSERT INTO creators(first_name, last_name, field_mode, library_id)
                VALUES (?, ?, ?, ?)
                """,
                (creator.first_name, creator.last_name, creator.field_mode, creator.library_id),
            ).lastrowid
            self._notify("add", "creator", creator.id)
        return creator.id

    def get_creator(self, creator_id: int) -> Optional[Creator]:
        row = self._conn.execute("SELECT * FROM creators WHERE id = ?", (creator_id,)).fetchone()
        if row is None:
            return None
        return Creator(
            first_name=row["first_name"],
            last_name=row["last_name"],
            field_mode=row["field_mode"],
            library_id=row["library_id"],
            id=row["id"],
        )

    def first_creator(self, record: Record) -> str:
        """Short creator summary: ``A``, ``A and B`` or ``A et al.``."""
        if not record.creators:
            return ""

        for creator_type in itemtypes.creator_summary_types(record.item_type):
            names = []
            for ref in record.creators:
                if ref.creator_type != creator_type:
                    continue
                creator = self.get_creator(ref.creator_id)
                if creator is not None and creator.last_name:
                    names.append(creator.last_name)
            if len(names) == 1:
                return names[0]
            if len(names) == 2:
                return f"{names[0]} and {names[1]}"
            if names:
                return f"{names[0]} et al."
        return ""

    # Tags

    def add_tags(self, item_id: int, names: Iterable[str], tag_type: int = 0) -> List[Tag]:
        added: List[Tag] = []
        with self.transaction() as conn:
            for name in names:
                name = (name or "").strip()
                if not name:
                    continue
                row = conn.execute(
                    "SELECT id FROM tags WHERE name = ? AND type = ?", (name, tag_type)
                ).fetchone()
                if row:
                    tag_id = row["id"]
                else:
                    tag_id = conn.execute(
                        "INSERT INTO tags(name, type) VALUES (?, ?)", (name, tag_type)
                    ).lastrowid
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO item_tags(item_id, tag_id) VALUES (?, ?)",
                    (item_id, tag_id),
                )
                if cursor.rowcount:
                    self._notify("add", "item-tag", f"{item_id}-{tag_id}")
                    added.append(Tag(id=tag_id, name=name, type=tag_type))
        return added

    def get_tags(self, item_id: int) -> List[Tag]:
        rows = self._conn.execute(
            """
            SELECT t.id AS id, t.name AS name, t.type AS type
            FROM item_tags it JOIN tags t ON t.id = it.tag_id
            WHERE it.item_id = ?
            ORDER BY t.name
            """,
            (item_id,),
        ).fetchall()
        return [Tag(id=row["id"], name=row["name"], type=row["type"]) for row in rows]

    # Collections

    def add_collection(
        self, name: str, parent_id: Optional[int] = None, library_id: Optional[int] = None
    ) -> Collection:
        with self.transaction() as conn:
            key = self._new_key()
            collection_id = conn.execute(
                "INSERT INTO collections(key, name, parent_id, library_id) VALUES (?, ?, ?, ?)",
                (key, name, parent_id, library_id),
            ).lastrowid
            self._notify("add", "collection", collection_id)
        return Collection(
            id=collection_id, key=key, name=name, parent_id=parent_id, library_id=library_id
        )

    def add_to_collection(self, collection_id: int, item_id: int) -> None:
        with self.transaction() as conn:
            if self.get_collection(collection_id) is None:
                raise RecordNotFoundError(f"Collection {collection_id} does not exist")
            order_index = conn.execute(
                "SELECT COUNT(*) FROM collection_items WHERE collection_id = ?", (collection_id,)
            ).fetchone()[0]
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO collection_items(collection_id, item_id, order_index)
                VALUES (?, ?, ?)
                """,
                (collection_id, item_id, order_index),
            )
            if cursor.rowcount:
                self._notify("add", "collection-item", f"{collection_id}-{item_id}")

    def get_collection(self, collection_id: int) -> Optional[Collection]:
        row = self._conn.execute(
            "SELECT * FROM collections WHERE id = ?", (collection_id,)
        ).fetchone()
        return self._load_collection(row) if row else None

    def collection_items(self, collection_id: int) -> List[int]:
        rows = self._conn.execute(
            "SELECT item_id FROM collection_items WHERE collection_id = ? ORDER BY order_index",
            (collection_id,),
        ).fetchall()
        return [row["item_id"] for row in rows]

    def child_collections(self, collection_id: int) -> List[Collection]:
        rows = self._conn.execute(
            "SELECT * FROM collections WHERE parent_id = ? ORDER BY id", (collection_id,)
        ).fetchall()
        return [self._load_collection(row) for row in rows]

    @staticmethod
    def _load_collection(row: sqlite3.Row) -> Collection:
        return Collection(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            parent_id=row["parent_id"],
            library_id=row["library_id"],
        )

    # Notifier support

    def record_exists(self, event_type: str, subject_id: Union[int, str]) -> bool:
        """Existence check used to drop stale queued 'modify' events."""
        table = {"item": "items", "tag": "tags", "collection": "collections"}.get(event_type)
        if table is None:
            return True
        row = self._conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (subject_id,)).fetchone()
        return row is not None

    def _notify(
        self,
        event: str,
        event_type: str,
        ids: Union[int, str],
        extra_data: Optional[Dict] = None,
    ) -> None:
        if self.notifier is not None:
            self.notifier.trigger(event, event_type, ids, extra_data)

    def get_stats(self) -> dict:
        conn = self._conn
        counts = {
            row["item_type"]: row["count"]
            for row in conn.execute(
                "SELECT item_type, COUNT(*) AS count FROM items GROUP BY item_type"
            )
        }
        return {
            "record_count": sum(counts.values()),
            "attachment_count": counts.get("attachment", 0),
            "note_count": counts.get("note", 0),
            "collection_count": conn.execute("SELECT COUNT(*) FROM collections").fetchone()[0],
            "tag_count": conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0],
        }
