"""Stitch - canvas graph compiler and execution engine.

Compiles authored canvases into immutable execution artifacts and walks
them at runtime, moving entities along journey edges and firing system
edge integrations.
"""

__version__ = "0.1.0"
