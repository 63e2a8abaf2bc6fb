"""OAuth gateway components."""
