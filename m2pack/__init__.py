"""Tools for Medieval II: Total War .pack archives."""

__version__ = "0.1.0"
