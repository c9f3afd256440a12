"""Blogsync: keeps a local list of articles in step with a hosted backend."""

__version__ = "0.1.0"
