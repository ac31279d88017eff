import psycopg2
import psycopg2.extras

from backend.config import Settings


class IngestLedger:
    """Seen-URL log in Postgres, keyed by (source_key, external_id).

    Kept apart from the content repository; a row existing means the
    article was already drafted for that source.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestLedger":
        if not settings.database_url:
            raise RuntimeError("Missing DATABASE_URL")
        return cls(settings.database_url)

    def _connect(self):
        conn = psycopg2.connect(self.dsn, cursor_factory=psycopg2.extras.RealDictCursor)
        conn.autocommit = True
        return conn

    def find(self, source_key: str, external_id: str) -> dict | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, source_key, external_id, status, created_at, updated_at
                    FROM ingested_items
                    WHERE source_key = %s AND external_id = %s
                    LIMIT 1
                    """,
                    (source_key, external_id),
                )
                row = cur.fetchone()
        return dict(row) if row else None

    def insert(self, source_key: str, external_id: str, raw: dict, normalized: dict, status: str = "new") -> int | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ingested_items (source_key, external_id, raw, normalized, status)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (source_key, external_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        source_key,
                        external_id,
                        psycopg2.extras.Json(raw),
                        psycopg2.extras.Json(normalized),
                        status,
                    ),
                )
                row = cur.fetchone()
        return row["id"] if row else None

    def update(self, entry_id: int, raw: dict, normalized: dict, status: str = "refreshed") -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE ingested_items
                    SET raw = %s, normalized = %s, status = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (psycopg2.extras.Json(raw), psycopg2.extras.Json(normalized), status, entry_id),
                )

    def delete_by_source(self, source_key: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM ingested_items WHERE source_key = %s", (source_key,))
                return cur.rowcount

    def count_by_source(self, source_key: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT count(*) AS n FROM ingested_items WHERE source_key = %s",
                    (source_key,),
                )
                row = cur.fetchone()
        return int(row["n"]) if row else 0
