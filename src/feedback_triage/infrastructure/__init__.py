"""
Infrastructure
==============

Database and LLM adapters shared across the application.
"""
