"""
Reporting module.

Report definitions run against whitelisted data sources (``sources.py``), are
exported through ``app.erp.exports`` and stored via ``app.erp.storage``.
``bi.py`` pushes datasets to external BI tools; ``optimizer.py`` suggests
indexes from slow-query history.
"""
