"""Application wiring and wallet management."""
