"""Domain layer: entities, value objects, executor base class and lifecycle rules."""
