"""Quality management: inspections, non-conformances, CAPA, audits and supplier quality."""
