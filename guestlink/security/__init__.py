"""Owner authentication and HTTP security middleware."""
