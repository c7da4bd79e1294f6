"""
Pipeline Module
===============

Bounded context for analyzing feedback threads with an LLM.

Responsibilities:
- Durable job ledger with an atomic, multi-worker claim
- Thread-state extraction, gatekeeper decision and work item generation
- Persisting outcomes (thread status, messages, work items, audit log)
"""
