"""
Testing module (QA tooling for the ERP itself).

Suites and cases, simulated test runs, performance and security scan records,
and coverage snapshots.
"""
