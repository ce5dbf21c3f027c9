"""
Case Lifecycle Module
=====================

Bounded Context for security case tracking and SLA enforcement.

Responsibilities:
- Move cases through Open / In Progress / Resolved / Closed
- Compute response deadlines from priority
- Keep an append-only timeline per case
- Mark breaches and escalate stalled cases in background sweeps
- Keep analyst workload counters consistent with live case data
- Notify assignees, escalation targets and digest subscribers
"""

__version__ = "1.0.0"
