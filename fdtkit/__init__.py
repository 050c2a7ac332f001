"""Device tree toolkit: live trees, source positions, and source and YAML output."""

__version__ = "1.0.0"

__all__ = ["livetree", "srcpos", "treesource", "util", "yamltree"]