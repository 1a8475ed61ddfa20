"""
Funding Kernel

The workflow and authorization engine for charity cases and recurring
projects:
- Table-driven case lifecycle with per-role transition rules
- Contribution approval, rejection, resubmission and revision
- Funded totals recomputed from approved contributions only
- Multi-cycle project advancement
- Role-based permission evaluation with a TTL cache
- Hash-chained audit trail for every mutation
"""

__version__ = "0.1.0"
