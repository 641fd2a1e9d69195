"""
eventscore
Competition scoring certification, consensus and reversal engine.
"""

__version__ = "1.0.0"
