"""Guest session lifecycle."""
