"""
Utility functions for the voice agent.
"""

from .cancellation import CancelToken
from .display import TypewriterDisplay

__all__ = [
    "CancelToken",
    "TypewriterDisplay",
]
