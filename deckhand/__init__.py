"""Deckhand - an agent that drives docker, file, git and deploy tools."""

__version__ = "0.1.0"

from deckhand.config import Config

__all__ = ["Config", "__version__"]
