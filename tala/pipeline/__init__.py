"""AI ingestion pipeline: attachment interpretation, classification, extraction."""
