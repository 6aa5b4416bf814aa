"""emcflow - online schema migrations with the Expand/Migrate/Contract pattern."""

__version__ = "0.1.0"
