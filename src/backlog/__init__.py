"""backlog: git-backed task records reconciled across branches."""

__version__ = "1.4.0"
