"""
Manufacturing module.

Production lines, bills of materials and work orders, with shop-floor data capture
(quantities, process readings, downtime, in-line inspections) rolled up into
efficiency and scrap analytics.
"""
