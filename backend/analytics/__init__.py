"""Page-view analytics: beacon ingestion and dashboard aggregation."""
