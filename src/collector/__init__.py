"""Claude archive collector: incremental sync of sessions and git history."""

__version__ = "1.0.0"
