"""Ingestion paths into the store.

Backfill, live tailing and dead-letter retries all funnel raw gateway events
through :func:`ledgermirror.ingestion.normalize.normalize_transfer` and the
:class:`ledgermirror.ingestion.apply.TransferApplier`.
"""
