"""Token vault: mints and resolves opaque link/session tokens."""
