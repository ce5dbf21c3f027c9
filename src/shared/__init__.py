"""
Shared Kernel Module
====================

Shared infrastructure used by the case engine bounded context.

Architecture Pattern: Modular Monolith
- Each module (cases) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add case lifecycle or SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
