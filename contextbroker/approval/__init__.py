"""Live (human-in-the-loop) approval of context requests."""
