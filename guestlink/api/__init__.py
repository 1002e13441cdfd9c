"""HTTP surface: app factory, routers, request schemas."""
