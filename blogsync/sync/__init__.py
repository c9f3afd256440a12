"""Synchronization of the local article list with the hosted table."""

from .article_sync import ArticleSync

__all__ = ["ArticleSync"]
