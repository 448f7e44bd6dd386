"""Infrastructure adapters and composition roots."""
