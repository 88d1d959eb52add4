"""
Recall: store personal memories and ask questions about them.
"""

from .core.config import VERSION

__version__ = VERSION
