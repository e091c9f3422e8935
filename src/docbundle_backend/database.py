"""
SQLite store for submission records.

The pipeline only reads submissions; ``save_submission`` exists so records
created elsewhere (or by tests) can be loaded into the local store.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import Document, Submission


# Default database path
DEFAULT_DB_PATH = Path("data/submissions.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


class SubmissionDatabase:
    """
    SQLite database for submission lookup.

    Thread-safe: every call opens its own connection and SQLite handles
    concurrent readers with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        _ensure_db_dir(db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    customer_name TEXT NOT NULL,
                    customer_email TEXT NOT NULL,
                    documents TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

    def save_submission(self, submission: Submission) -> None:
        """
        Save or replace a submission record.

        Args:
            submission: The submission, including its document descriptors
        """
        documents = [document.model_dump(mode="json", exclude={"kind"}) for document in submission.documents]
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO submissions (
                    id, customer_name, customer_email, documents, created_at
                ) VALUES (?, ?, ?, ?, ?)
            """, (
                submission.id,
                submission.customer_name,
                submission.customer_email,
                json.dumps(documents),
                submission.created_at.isoformat(),
            ))

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        """
        Retrieve a submission by ID.

        Args:
            submission_id: The submission ID

        Returns:
            Submission or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM submissions WHERE id = ?", (submission_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_submission(row)

    def _row_to_submission(self, row: sqlite3.Row) -> Submission:
        """Convert a database row to a Submission."""
        documents = [Document(**raw) for raw in json.loads(row["documents"] or "[]")]
        return Submission(
            id=row["id"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            documents=documents,
            created_at=datetime.fromisoformat(row["created_at"]),
        )
