"""
Student council e-voting: ballot sessions, vote submission and results.
"""

__version__ = "0.1.0"
