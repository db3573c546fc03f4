"""Relational state store: tables, sessions, repositories and distributed locks."""
