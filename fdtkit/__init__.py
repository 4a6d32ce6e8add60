"""In-memory device trees with source-position tracking and source and YAML output."""

__version__ = "0.1.0"

__all__ = ["livetree", "srcpos", "treesource", "util", "yamltree"]