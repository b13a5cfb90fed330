"""
ingestion package

Chain reads, log normalization and the event ingestor.
"""
