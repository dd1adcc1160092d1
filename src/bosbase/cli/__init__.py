"""Command line interface for poking at a BosBase backend."""
