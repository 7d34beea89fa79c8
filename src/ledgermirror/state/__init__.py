"""State/store layer.

This package is the single source of truth for how transfer events from
backfill, the live stream and dead-letter retries are persisted into the
mirror's asset, transfer and dead-letter tables.
"""
