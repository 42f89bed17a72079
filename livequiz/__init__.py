"""
livequiz - scheduled, server-clocked live quiz orchestrator.
"""

__version__ = "1.0.0"
