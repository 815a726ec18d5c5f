"""
LJK Exam Analytics

Event-driven statistics aggregation for scanned OMR answer sheets.
"""

__version__ = "1.0.0"
