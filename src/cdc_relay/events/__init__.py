"""Change event model, dispatch registry and domain handlers."""
