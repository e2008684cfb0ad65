"""Poll RSS/Atom feeds and email every new entry."""

__version__ = "0.1.0"
