from dataclasses import fields
from typing import Dict, Optional
from .db import Database
from .exceptions import ConfigurationError
from .models import RetryConfig


class ConfigManager:
    def __init__(self, database: Database):
        self.db = database
        self._defaults = {
            f.name: str(f.default) for f in fields(RetryConfig)
        }

    def get(self, key: str) -> Optional[str]:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cursor.fetchone()
            if row:
                return row[0]
            return self._defaults.get(key)

    def set(self, key: str, value: str):
        if key in self._defaults:
            self._parse_positive_int(key, value)

        with self.db.transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO config (key, value)
                VALUES (?, ?)
            """, (key, value))

    def list_all(self) -> Dict[str, str]:
        result = self._defaults.copy()

        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT key, value FROM config")
            for row in cursor.fetchall():
                result[row[0]] = row[1]

        return result

    def get_config(self) -> RetryConfig:
        config_dict = self.list_all()

        return RetryConfig(**{
            key: self._parse_positive_int(key, config_dict[key])
            for key in self._defaults
        })

    def _parse_positive_int(self, key: str, value: str) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Configuration '{key}' must be an integer, got '{value}'")
        if parsed < 1:
            raise ConfigurationError(f"Configuration '{key}' must be at least 1, got {parsed}")
        return parsed
