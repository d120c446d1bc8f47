"""Integration adapters for the two backing systems (Formio, BAP).

Keep these modules small and testable:
- No FastAPI request/response objects
- No reconciliation / gating concerns
- Pure IO + parsing helpers
"""
