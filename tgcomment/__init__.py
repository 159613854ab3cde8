"""
Durable relay between a messaging platform's bot API and a content
system's comments.
"""

__version__ = "1.0.0"
