"""
BodaCover job scheduling and batch-settlement engine.
"""

__version__ = "1.0.0"
