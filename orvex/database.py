"""OrvexDB: keyed record store via SQLAlchemy Core.

Every entity the engine persists (wallet, settings, positions, pending
action) is one JSON document keyed by (namespace, user_id). Writers never do
an unguarded read-modify-write: creation uses insert-if-absent and updates
use a version column with bounded retries.
"""
import copy
import json
import logging
from typing import Any, Callable, Optional

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from orvex.db_engine import get_engine
from orvex.errors import PersistenceConflictError
from orvex.models import metadata, records

logger = logging.getLogger("database")

MAX_UPDATE_RETRIES = 5


class OrvexDB:
    def __init__(self, engine=None, pool_size=10, max_retries=MAX_UPDATE_RETRIES):
        if engine is not None:
            self.engine = engine
        else:
            self.engine = get_engine(pool_size=pool_size)
        self.max_retries = max_retries

    def create_tables(self):
        """Create any missing tables."""
        metadata.create_all(self.engine)

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(records)
        if self.engine.dialect.name == 'sqlite':
            return sqlite_insert(records)
        raise NotImplementedError(f"Unsupported database dialect: {self.engine.dialect.name}")

    @staticmethod
    def _key(namespace, user_id):
        return (records.c.namespace == namespace) & (records.c.user_id == str(user_id))

    # ─── Plain get / put ───────────────────────────────────────────────────

    def get_record(self, namespace: str, user_id) -> Optional[Any]:
        """Fetch the JSON document stored for a user, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(records.c.value_json).where(self._key(namespace, user_id))
            ).mappings().fetchone()
            return json.loads(row['value_json']) if row else None

    def put_record(self, namespace: str, user_id, value: Any) -> None:
        """Store a document, replacing whatever was there."""
        stmt = self._insert().values(
            namespace=namespace, user_id=str(user_id),
            value_json=json.dumps(value), version=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['namespace', 'user_id'],
            set_={
                'value_json': stmt.excluded.value_json,
                'version': records.c.version + 1,
                'updated_at': func.now(),
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def insert_record_if_absent(self, namespace: str, user_id, value: Any) -> bool:
        """Store a document only if none exists. Returns True if inserted."""
        stmt = self._insert().values(
            namespace=namespace, user_id=str(user_id),
            value_json=json.dumps(value), version=1,
        ).on_conflict_do_nothing(index_elements=['namespace', 'user_id'])
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
            return result.rowcount == 1

    def delete_record(self, namespace: str, user_id) -> bool:
        """Remove a document. Returns True if one existed."""
        with self.engine.begin() as conn:
            result = conn.execute(records.delete().where(self._key(namespace, user_id)))
            return result.rowcount > 0

    def count_records(self, namespace: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                sa.select(func.count()).select_from(records).where(records.c.namespace == namespace)
            ).scalar_one()

    # ─── Atomic read-modify-write ──────────────────────────────────────────

    def update_record(
        self,
        namespace: str,
        user_id,
        mutate: Callable[[Any], Any],
        default: Any = None,
    ) -> Any:
        """
        Apply ``mutate`` to the stored document and write the result back.

        ``mutate`` receives a private copy of the current document (or of
        ``default`` when nothing is stored) and returns the new document.
        Returning None deletes the record. The write only lands if nobody
        else wrote the same key in between; otherwise ``mutate`` is called
        again on the fresh value, so it must not have side effects.

        Raises:
            PersistenceConflictError: If the key stayed contended for
                ``max_retries`` attempts.
        """
        key = str(user_id)
        for attempt in range(1, self.max_retries + 1):
            with self.engine.begin() as conn:
                row = conn.execute(
                    sa.select(records.c.value_json, records.c.version)
                    .where(self._key(namespace, key))
                ).mappings().fetchone()

                current = json.loads(row['value_json']) if row else copy.deepcopy(default)
                updated = mutate(current)

                if row is None:
                    if updated is None:
                        return None
                    result = conn.execute(
                        self._insert().values(
                            namespace=namespace, user_id=key,
                            value_json=json.dumps(updated), version=1,
                        ).on_conflict_do_nothing(index_elements=['namespace', 'user_id'])
                    )
                elif updated is None:
                    result = conn.execute(
                        records.delete().where(
                            self._key(namespace, key) & (records.c.version == row['version'])
                        )
                    )
                else:
                    result = conn.execute(
                        records.update()
                        .where(self._key(namespace, key) & (records.c.version == row['version']))
                        .values(
                            value_json=json.dumps(updated),
                            version=row['version'] + 1,
                            updated_at=func.now(),
                        )
                    )

                if result.rowcount == 1:
                    return updated

            logger.debug(f"Write conflict on {namespace}/{key} (attempt {attempt}/{self.max_retries})")

        raise PersistenceConflictError(
            f"Could not update {namespace} for user {key}: concurrent writers",
            details={"namespace": namespace, "user_id": key, "attempts": self.max_retries},
        )
