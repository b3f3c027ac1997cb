"""
Control Plane Test Suite.

- Cache tiers, eviction and reconciliation
- Schedule engine recurrence, validation and ownership
- Dispatch and schedule loops
- SQLite collaborators and the service facade
"""
