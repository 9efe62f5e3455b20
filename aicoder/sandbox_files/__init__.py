"""Project tree, path policy and sandbox write-through synchronization."""
