"""Shared on-disk session document: locking, atomic writes, migrations, backups."""

from maas.store.config_store import ConfigStore
from maas.store.document import SessionConfig

__all__ = ["ConfigStore", "SessionConfig"]
