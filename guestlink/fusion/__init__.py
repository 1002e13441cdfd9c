"""Context fusion: guest sessions writing into owner conversations."""
