"""SQLite persistence: SQLModel tables, Alembic runner and the repository facade."""
