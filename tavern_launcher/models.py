"""
Database models for the launcher.

Uses Peewee ORM with SQLite. Stores the single launcher settings record:
the active version and the feature flags.
"""

import os
from datetime import datetime

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    Model,
    SqliteDatabase,
)

from .config import config

database = DatabaseProxy()

SETTINGS_ID = 1


def initialize_db(path: str = None):
    """Initialize database connection and create tables."""
    path = str(path or config.db_path)
    if path != ":memory:":
        os.makedirs(os.path.dirname(path), exist_ok=True)
    db = SqliteDatabase(
        path,
        pragmas={
            "journal_mode": "wal",
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([Settings], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class Settings(BaseModel):
    """Launcher settings. Exactly one row, read and written as a whole."""

    id = AutoField()
    active_version = CharField(null=True)
    speed_optimization = BooleanField(default=False)
    api_aggregation = BooleanField(default=False)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "settings"

    @classmethod
    def load(cls) -> "Settings":
        """Return the settings record, creating it with defaults if absent."""
        settings = cls.get_or_none(cls.id == SETTINGS_ID)
        if settings is None:
            settings = cls.create(id=SETTINGS_ID)
        return settings

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def to_dict(self) -> dict:
        return {
            "active_version": self.active_version,
            "speed_optimization": self.speed_optimization,
            "api_aggregation": self.api_aggregation,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
