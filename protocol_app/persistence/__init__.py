"""SQLite persistence for protocol definitions and runs."""

from .database import Database
from .definition_store import DefinitionStore
from .run_store import RunStore

__all__ = ["Database", "DefinitionStore", "RunStore"]
