"""HTTP webhook server."""
