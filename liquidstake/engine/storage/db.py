import sqlite3
import threading
import time
from typing import Optional, Dict, Iterable, Tuple, List

class StorageDB:
    def __init__(self, db_path: str):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.cursor = self.conn.cursor()
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._lock:
            # State table: Key-Value store for ledger, settings, withdrawals, balances
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')
            # Operations journal: one row per committed operation (audit only)
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    op_type TEXT,
                    caller TEXT,
                    data TEXT,
                    timestamp INTEGER
                )
            ''')
            self.conn.commit()

    # --- State Methods ---
    def get_state(self, key: str) -> Optional[str]:
        with self._lock:
            self.cursor.execute('SELECT value FROM state WHERE key = ?', (key,))
            row = self.cursor.fetchone()
            return row[0] if row else None

    def set_state_batch(self, items: Iterable[Tuple[str, str]],
                        operation: Optional[Tuple[str, str, str]] = None):
        """
        Writes all items (and the optional journal entry) in a single transaction.
        Either every key lands or none does.

        Args:
            items: (key, value) pairs
            operation: optional (op_type, caller, data_json) journal entry
        """
        with self._lock:
            try:
                self.cursor.execute('BEGIN')
                self.cursor.executemany('INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)', list(items))
                if operation is not None:
                    op_type, caller, data = operation
                    self.cursor.execute(
                        'INSERT INTO operations (op_type, caller, data, timestamp) VALUES (?, ?, ?, ?)',
                        (op_type, caller, data, int(time.time()))
                    )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def get_state_by_prefix(self, prefix: str) -> Dict[str, str]:
        with self._lock:
            self.cursor.execute('SELECT key, value FROM state WHERE key LIKE ?', (f"{prefix}%",))
            return {row[0]: row[1] for row in self.cursor.fetchall()}

    # --- Journal Methods ---
    def get_operations(self, limit: int = 100) -> List[Tuple[int, str, str, str, int]]:
        """Returns the most recent journal rows, newest first."""
        with self._lock:
            self.cursor.execute(
                'SELECT seq, op_type, caller, data, timestamp FROM operations ORDER BY seq DESC LIMIT ?',
                (limit,)
            )
            return self.cursor.fetchall()

    def close(self):
        with self._lock:
            self.conn.close()
