"""Ledger storage: SQLModel tables, engine policy and migrations."""
