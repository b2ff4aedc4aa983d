"""Local-first synchronization engine for a wallabag read-later cache."""

__version__ = "0.1.0"
