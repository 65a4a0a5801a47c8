"""
Plan -> act -> reflect generation pipeline streamed to HTTP clients as Server-Sent Events.
"""

__version__ = "0.1.0"
