"""
Shared Kernel Module
====================

Shared infrastructure used by every bounded context: structured logging
and the HTTP middleware stack.

DO NOT add automation business logic to the shared kernel.
"""

__version__ = "1.0.0"
