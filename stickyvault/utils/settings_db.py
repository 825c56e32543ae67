"""Small key-value store for runtime settings that live outside the config file."""

import json
import sqlite3
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class SettingsDB:
    """Persistent settings in SQLite."""

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            db_path = Path.home() / ".stickyvault_settings.db"

        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()

    def set(self, key: str, value: str) -> None:
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def get(self, key: str) -> str | None:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row[0] if row else None

    def delete(self, key: str) -> None:
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()


_settings_db: SettingsDB | None = None

CONFIG_PATH_KEY = "config_file_path"
LAST_SYNC_KEY = "last_sync_summary"


def get_settings_db() -> SettingsDB:
    """Get the process-wide settings database."""
    global _settings_db
    if _settings_db is None:
        _settings_db = SettingsDB()
    return _settings_db


def get_config_path(store: KeyValueStore | None = None) -> Path | None:
    path_str = (store or get_settings_db()).get(CONFIG_PATH_KEY)
    return Path(path_str) if path_str else None


def set_config_path(path: Path, store: KeyValueStore | None = None) -> None:
    (store or get_settings_db()).set(CONFIG_PATH_KEY, str(path))


def record_last_sync(summary: dict, store: KeyValueStore | None = None) -> None:
    """Remember the outcome of the latest sync pass for ``sync status``."""
    (store or get_settings_db()).set(LAST_SYNC_KEY, json.dumps(summary))


def get_last_sync(store: KeyValueStore | None = None) -> dict | None:
    raw = (store or get_settings_db()).get(LAST_SYNC_KEY)
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
