"""
Roadmap Explorer
Hierarchy-to-graph layout and generation-progress tracking for
learning roadmaps.
"""

__version__ = "0.1.0"
