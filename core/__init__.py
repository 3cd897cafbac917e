"""Core module - cross-cutting services shared by the matching engine.

Holds observability (correlated logging and in-process metrics). Domain
logic lives in /draw_matching/.
"""

__version__ = "1.0.0"
