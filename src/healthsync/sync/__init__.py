"""Sync infrastructure for healthsync.

Modules:
    backfill     — Catch-up backfill engine (sequential, oldest-first, resumable)
    orchestrator — Connection lifecycle, sync_now, background scheduling
    dedup        — Dedup keys, in-process cache, upsert query builder
"""
