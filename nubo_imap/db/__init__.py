"""Relational store access."""

from .database import Database
from .models import Base, Connection, Email, ImapSyncState

__all__ = ["Base", "Connection", "Database", "Email", "ImapSyncState"]
