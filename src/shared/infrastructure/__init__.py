"""
Infrastructure Layer
=====================

Low-level technical concerns shared by bounded contexts:
- Logging setup
- Metrics export
"""
