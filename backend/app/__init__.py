"""Campaign relay backend."""
