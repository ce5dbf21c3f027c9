"""
Infrastructure Layer
====================

Database engine and session management shared by bounded contexts.
"""
