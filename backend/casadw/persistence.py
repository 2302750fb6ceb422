from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import StorageError
from .services.sync import (
    apply_sync_patch,
    default_user_state,
    empty_fleet,
    empty_record,
    find_record,
    render_sync_state,
    replace_record,
    utc_timestamp,
    with_defaults,
)
from .store import InMemoryStore

logger = logging.getLogger(__name__)

Mutation = Callable[[dict[str, Any]], dict[str, Any]]


class Persistence:
    backend_name = "base"

    def check_connection(self) -> None:
        return None

    def load_document(self, user_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def update_document(self, user_id: str, mutate: Mutation) -> dict[str, Any]:
        raise NotImplementedError

    def delete_user(self, user_id: str) -> bool:
        raise NotImplementedError

    def get_or_create(self, user_id: str) -> dict[str, Any]:
        document = self.load_document(user_id)
        if document is None:
            return default_user_state(user_id)
        return with_defaults(document)

    def get_record(self, user_id: str, kind: str, month: int, year: int) -> dict[str, Any]:
        document = self.get_or_create(user_id)
        record = find_record(document[kind], month, year)
        if record is None:
            return empty_record(kind, user_id, month, year)
        # Records written through sync may lack userId or updatedAt.
        return {**empty_record(kind, user_id, month, year), **record}

    def put_record(self, user_id: str, kind: str, month: int, year: int, payload: dict[str, Any]) -> dict[str, Any]:
        record = {**payload, "userId": user_id, "month": month, "year": year, "updatedAt": utc_timestamp()}
        self.update_document(user_id, lambda document: replace_record(document, kind, record))
        return record

    def get_fleet(self, user_id: str) -> dict[str, Any]:
        fleet = self.get_or_create(user_id)["fleet"]
        if not isinstance(fleet, dict):
            return {**empty_fleet(user_id), "vehicles": fleet}
        return {**empty_fleet(user_id), **fleet}

    def put_fleet(self, user_id: str, vehicles: Any) -> dict[str, Any]:
        fleet = {"userId": user_id, "vehicles": vehicles, "updatedAt": utc_timestamp()}

        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            return {**document, "fleet": fleet, "updatedAt": fleet["updatedAt"]}

        self.update_document(user_id, mutate)
        return fleet

    def sync_read(self, user_id: str) -> dict[str, Any]:
        return render_sync_state(self.get_or_create(user_id))

    def sync_write(self, user_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return self.update_document(user_id, lambda document: apply_sync_patch(document, patch))


class InMemoryPersistence(Persistence):
    backend_name = "memory"

    def __init__(self, store: Optional[InMemoryStore] = None) -> None:
        self.store = store or InMemoryStore()
        # Guards read, mutate and assign of a user document.
        self._lock = threading.Lock()

    def load_document(self, user_id: str) -> Optional[dict[str, Any]]:
        return self.store.documents.get(user_id)

    def get_or_create(self, user_id: str) -> dict[str, Any]:
        with self._lock:
            document = self.store.documents.get(user_id)
            if document is None:
                document = default_user_state(user_id)
                self.store.documents[user_id] = document
        return with_defaults(document)

    def update_document(self, user_id: str, mutate: Mutation) -> dict[str, Any]:
        with self._lock:
            current = self.store.documents.get(user_id) or default_user_state(user_id)
            updated = mutate(current)
            self.store.documents[user_id] = updated
        return updated

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            return self.store.documents.pop(user_id, None) is not None


class PostgresPersistence(Persistence):
    """
    One row per user holding the whole document as JSON text.

    The SQL is kept portable so the same class runs against SQLite in tests.
    """

    backend_name = "postgres"

    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._schema_ready = False

    def _run(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except SQLAlchemyError as exc:
            logger.error("storage error: %s", exc)
            raise StorageError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self._run(
            """
            create table if not exists user_documents (
              user_id text primary key,
              document text not null,
              created_at timestamp not null default current_timestamp,
              updated_at timestamp not null default current_timestamp
            )
            """
        )
        self._schema_ready = True

    def check_connection(self) -> None:
        self._run("select 1 as ok")
        self._ensure_schema()

    def load_document(self, user_id: str) -> Optional[dict[str, Any]]:
        self._ensure_schema()
        rows = self._run("select document from user_documents where user_id = :user_id", {"user_id": user_id})
        if not rows:
            return None
        return json.loads(rows[0]["document"])

    def update_document(self, user_id: str, mutate: Mutation) -> dict[str, Any]:
        self._ensure_schema()
        lock = " for update" if self.engine.dialect.name == "postgresql" else ""
        try:
            with self.engine.begin() as conn:
                # Seed the row first so a brand-new user's first writes also serialize on the row lock.
                conn.execute(
                    text(
                        """
                        insert into user_documents (user_id, document, created_at, updated_at)
                        values (:user_id, :document, current_timestamp, current_timestamp)
                        on conflict (user_id) do nothing
                        """
                    ),
                    {"user_id": user_id, "document": json.dumps(default_user_state(user_id), ensure_ascii=False)},
                )
                row = conn.execute(
                    text(f"select document from user_documents where user_id = :user_id{lock}"),
                    {"user_id": user_id},
                ).first()
                updated = mutate(json.loads(row._mapping["document"]))
                conn.execute(
                    text(
                        """
                        update user_documents
                        set document = :document,
                            updated_at = current_timestamp
                        where user_id = :user_id
                        """
                    ),
                    {"user_id": user_id, "document": json.dumps(updated, ensure_ascii=False)},
                )
        except SQLAlchemyError as exc:
            logger.error("storage error while writing %s: %s", user_id, exc)
            raise StorageError(str(exc)) from exc
        return updated

    def delete_user(self, user_id: str) -> bool:
        self._ensure_schema()
        rows = self._run("delete from user_documents where user_id = :user_id returning user_id", {"user_id": user_id})
        return bool(rows)


def get_persistence(settings: Settings) -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
