"""Similarity retrieval over a target's private fragments.

Embedding and nearest-neighbour search are injectable collaborators; the in-memory
index and hashing embedder here exist for dev and tests.
"""
