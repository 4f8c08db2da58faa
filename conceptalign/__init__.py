"""Concept alignment curation with multi-reviewer evaluation."""

__version__ = "0.1.0"
