"""
annotate.py — Back-fill provenance columns after a file's rows have landed.

Only rows whose column is still NULL are touched, so rows annotated by an
earlier file keep their values.

Ordering hazard: the UPDATE is scoped by NULL-ness, not by file. If file B1
(2011) and file B2 (2019) are both loaded before either is annotated, the
2019 back-fill also tags every B1 row. Callers must annotate each file
immediately after loading it, inside the same transaction (pipeline.py does
this); batching loads and then annotating once is wrong.
"""

import logging

import psycopg2

from db import get_cursor
from schema import build_backfill_sql

logger = logging.getLogger(__name__)


def backfill_provenance(
    conn: psycopg2.extensions.connection,
    table: str,
    provenance: dict,
    log: logging.Logger = None,
) -> dict[str, int]:
    """
    Set each provenance column to its value where it is currently NULL.

    Does not commit; run it inside db.transaction() together with the load.

    Returns:
        {column: rows updated}
    """
    log = log or logger
    updated: dict[str, int] = {}
    with get_cursor(conn, commit=False) as cur:
        for column, value in provenance.items():
            cur.execute(build_backfill_sql(table, column), (value,))
            updated[column] = cur.rowcount
    if any(updated.values()):
        log.debug("%s: back-filled %s", table, updated)
    return updated
