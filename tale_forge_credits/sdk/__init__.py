"""
SDK for Tale Forge Credits.

Provides charged generation clients built on the credit coordinator.
"""

from .openai_client import ChargedStoryClient

__all__ = ["ChargedStoryClient"]
