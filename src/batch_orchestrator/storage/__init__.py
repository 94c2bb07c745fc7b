"""SQLite storage for queue items, executions and circuit state."""
