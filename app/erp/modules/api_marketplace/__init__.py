"""
API marketplace module.

Scope:
- API catalogue with versions and endpoints
- Developer registration and hashed API keys
- Usage logging, rate-limit tiers and outbound webhooks
"""
