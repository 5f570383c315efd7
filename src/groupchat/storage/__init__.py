"""SQLite storage layer shared by the group chat repositories."""
