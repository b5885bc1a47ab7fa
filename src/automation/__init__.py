"""
Workflow Automation Module
==========================

Bounded Context for help-desk workflow automation rules.

Responsibilities:
- Store automation rules and the built-in template library
- Match ticket lifecycle events against rule triggers
- Evaluate rule conditions against ticket snapshots
- Dispatch rule actions to the ticket and notification services
- Scan open tickets for time-based and SLA-breach triggers
- Dry-run rules for the management UI
"""

__version__ = "1.0.0"
