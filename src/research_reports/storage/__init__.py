"""SQLite storage layer for report jobs and bug reports."""
