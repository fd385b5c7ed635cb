"""Cross-context permission & retrieval broker."""
