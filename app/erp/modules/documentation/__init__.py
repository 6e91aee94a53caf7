"""Company knowledge base: documents, versions, search analytics and reader feedback."""
