"""Per-user database shards.

Every user gets a private SQLite file plus two locks. The store lock is held
for the duration of a single store call, so each create/update/delete is
all-or-nothing with respect to other threads touching the same user. The turn
lock is held by the agent session for a whole chat turn so that turns for one
user never interleave, while background workflows can still read and write
between store calls.
"""

import hashlib
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from productivity_agent.db.engine import init_db, read_shard_owner


def shard_key(user_id: str) -> str:
    """Stable file-safe key for a user id."""
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]


class UserShard:
    def __init__(self, user_id: str, db_path: Path):
        self.user_id = user_id
        self.db_path = db_path
        self._store_lock = threading.RLock()
        self._turn_lock = threading.Lock()

    @contextmanager
    def connect(self):
        """Open a connection to this user's database under the store lock."""
        with self._store_lock:
            conn = init_db(self.db_path, self.user_id)
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def turn(self):
        """Hold the per-user turn lock for one complete chat turn."""
        with self._turn_lock:
            yield


class ShardRegistry:
    """Addresses user shards by user id."""

    def __init__(self, data_dir: Path):
        self.root = Path(data_dir) / "users"
        self._shards: dict[str, UserShard] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> UserShard:
        if not user_id or not isinstance(user_id, str):
            raise ValueError("userId is required")
        with self._lock:
            shard = self._shards.get(user_id)
            if shard is None:
                shard = UserShard(user_id, self.root / f"{shard_key(user_id)}.db")
                self._shards[user_id] = shard
            return shard

    @contextmanager
    def connect(self, user_id: str):
        with self.get(user_id).connect() as db:
            yield db

    def known_users(self) -> list[str]:
        """User ids with a shard on disk, plus any opened in this process."""
        with self._lock:
            users = set(self._shards)
        if self.root.exists():
            for path in sorted(self.root.glob("*.db")):
                try:
                    owner = read_shard_owner(path)
                except sqlite3.Error:
                    continue
                if owner:
                    users.add(owner)
        return sorted(users)
