"""
Legal knowledge-base extraction.

Turns legal study notes into validated concepts, cases, principles and rules using a
completion service, with retries, JSON repair, normalization and fuzzy deduplication.
"""

__version__ = "0.1.0"
