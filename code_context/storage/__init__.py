"""Relational persistence for repositories, branches, files and chunks."""

from .db import Store
from .metadata import MetadataStore

__all__ = ["MetadataStore", "Store"]
