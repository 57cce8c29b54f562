"""Docent: a document assistant that answers questions from project files."""

__version__ = "0.1.0"
