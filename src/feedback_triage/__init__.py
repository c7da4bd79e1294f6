"""
Feedback Triage
===============

Durable AI triage pipeline for customer feedback threads.
"""

__version__ = "1.0.0"
