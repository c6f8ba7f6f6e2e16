"""grammargen: run grammar code generators in isolated worker processes."""

__version__ = "0.1.0"
