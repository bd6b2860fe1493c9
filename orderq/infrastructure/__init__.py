"""SQLite access for the reference order store."""
