"""Vitalis workers: health export ingestion, dedup and daily scoring."""
