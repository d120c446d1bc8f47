"""Rebate reconciliation logic.

These modules pair Formio submissions with BAP records, derive each stage's
lifecycle state and decide which actions the applicant may take, using data
returned by integrations (Formio, BAP).

The matcher, status deriver, gate resolver and sorter are:
- deterministic
- unit-testable
- free of web/framework code
"""
