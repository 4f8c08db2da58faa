"""SQLite primitives and record models shared by the stores."""
