"""CrowdSafe services.

- Incident Service: observation lifecycle state machine and HTTP API
- Waypoint Service: waypoint graph traversal and admin registry
- Enrichment Service: claim-guarded AI risk assessment of observations
- Sweeper Service: periodic force-resolution of stale observations
- Audit Service: append-only trail of every state change
"""
