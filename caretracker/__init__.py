"""
CareTracker - Source Package

The transaction triage core of a caregiver expense tracker.
Bank transactions are imported, flagged as potentially medical,
reviewed one at a time, and turned into expense records.

DESIGN PRINCIPLES:
1. Sync suggests → Human decides → System links
2. A sync never overwrites a human decision
3. Every kept transaction maps to exactly one expense
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "CareTracker Team"
