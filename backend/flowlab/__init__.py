"""
Flowlab - runtime engine for scripted multi-page behavioral experiments
"""

__version__ = "1.0.0"
