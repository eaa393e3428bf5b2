"""
DepUp

Republishes npm packages under the @depup scope with their dependencies
refreshed, keeping an append-only revision history and community integrity
votes for every produced revision.
"""

__version__ = "0.1.0"

from .cli import main

__all__ = ["main"]
