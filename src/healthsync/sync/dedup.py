"""In-process dedup keys for derived events and milestones, plus the upsert SQL builder.

The scoring backend's uniqueness rules are authoritative:

    daily scores:    (user_id, date)               — upsert
    derived events:  (user_id, event_type, date)   — existence check before create
    milestones:      (user_id, milestone_id)       — existence check before record
    engine state:    (state_key, section)          — upsert

The helpers here mirror those keys in-process so one engine lifetime does
not repeat backend round-trips it has already made.
"""

from __future__ import annotations

from datetime import date


def event_key(user_id: str, event_type: str, day: date) -> str:
    """Key matching the backend's one-event-per-type-per-day rule."""
    return f"{user_id}:{event_type}:{day.isoformat()}"


def milestone_key(user_id: str, milestone_id: str) -> str:
    return f"{user_id}:milestone:{milestone_id}"


class InMemoryDedupCache:
    """Keys already settled against the backend during this process.

    Shared by the rings-closed detector and the streak calculator.  A key is
    marked only once the backend has confirmed the record exists (or accepted
    it), so a timed-out check is retried on the next sync::

        key = event_key(user_id, "rings_closed", day)
        if not cache.is_seen(key):
            ...  # existence check, create
            cache.mark_seen(key)
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Safe to call repeatedly with the same data: on conflict the non-key
    columns are overwritten and ``updated_at`` is bumped.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string ($1, $2, ... placeholders).
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
