"""Relational store contract and its two backends.

`InMemoryRepository` backs tests and the local CLI; `FirestoreRepository` persists to
Firebase. Both raise `StoreWriteFailure` on any backend error so callers only deal
with one failure type.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import BaseModel

from plancoach.dates import ensure_aware
from plancoach.errors import StoreWriteFailure
from plancoach.models import ItemStatus, LogEntry, PlanDocument, TrackableItem
from plancoach.text import normalize_title

logger = logging.getLogger(__name__)


class Repository(ABC):
    @abstractmethod
    def get_plan(self, user_id: str) -> Optional[PlanDocument]: ...

    @abstractmethod
    def save_plan(self, plan: PlanDocument) -> None: ...

    @abstractmethod
    def list_items(
        self,
        user_id: str,
        plan_id: Optional[str] = None,
        statuses: Optional[Iterable[ItemStatus]] = None,
    ) -> List[TrackableItem]: ...

    @abstractmethod
    def find_items_by_title(self, user_id: str, title: str, plan_id: Optional[str] = None) -> List[TrackableItem]:
        """Case-insensitive exact title match."""

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[TrackableItem]: ...

    @abstractmethod
    def insert_item(self, item: TrackableItem) -> None: ...

    @abstractmethod
    def update_item(self, item_id: str, fields: Dict[str, Any]) -> TrackableItem: ...

    @abstractmethod
    def insert_log(self, entry: LogEntry) -> None: ...

    @abstractmethod
    def update_log(self, entry_id: str, fields: Dict[str, Any]) -> None: ...

    @abstractmethod
    def list_logs(
        self,
        user_id: str,
        item_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[LogEntry]:
        """Entries sorted by performed_at, oldest first."""

    @abstractmethod
    def load_session(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def save_session(self, user_id: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def insert_ledger_event(self, row: Dict[str, Any]) -> None: ...


def _in_window(entry: LogEntry, since: Optional[datetime], until: Optional[datetime]) -> bool:
    performed = ensure_aware(entry.performed_at)
    if since is not None and performed < ensure_aware(since):
        return False
    if until is not None and performed >= ensure_aware(until):
        return False
    return True


class InMemoryRepository(Repository):
    """Process-local store. `fail_operations` names methods that should raise, for tests."""

    def __init__(self, fail_operations: Optional[Set[str]] = None):
        self.plans: Dict[str, PlanDocument] = {}
        self.items: Dict[str, TrackableItem] = {}
        self.logs: Dict[str, LogEntry] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.ledger: List[Dict[str, Any]] = []
        self.fail_operations: Set[str] = set(fail_operations or ())
        self._lock = threading.Lock()

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise StoreWriteFailure(operation, RuntimeError("injected failure"))

    def get_plan(self, user_id):
        self._check("get_plan")
        plan = self.plans.get(user_id)
        return plan.model_copy(deep=True) if plan else None

    def save_plan(self, plan):
        self._check("save_plan")
        with self._lock:
            self.plans[plan.user_id] = plan.model_copy(deep=True)

    def list_items(self, user_id, plan_id=None, statuses=None):
        self._check("list_items")
        wanted = set(statuses) if statuses else None
        result = []
        for item in self.items.values():
            if item.user_id != user_id:
                continue
            if plan_id and item.plan_id != plan_id:
                continue
            if wanted is not None and item.status not in wanted:
                continue
            result.append(item.model_copy(deep=True))
        return result

    def find_items_by_title(self, user_id, title, plan_id=None):
        key = normalize_title(title)
        return [i for i in self.list_items(user_id, plan_id) if normalize_title(i.title) == key]

    def get_item(self, item_id):
        self._check("get_item")
        item = self.items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def insert_item(self, item):
        self._check("insert_item")
        with self._lock:
            self.items[item.id] = item.model_copy(deep=True)

    def update_item(self, item_id, fields):
        self._check("update_item")
        with self._lock:
            current = self.items.get(item_id)
            if current is None:
                raise StoreWriteFailure("update_item", KeyError(item_id))
            updated = TrackableItem.model_validate({**current.model_dump(), **fields})
            self.items[item_id] = updated
            return updated.model_copy(deep=True)

    def insert_log(self, entry):
        self._check("insert_log")
        with self._lock:
            self.logs[entry.id] = entry.model_copy(deep=True)

    def update_log(self, entry_id, fields):
        self._check("update_log")
        with self._lock:
            current = self.logs.get(entry_id)
            if current is None:
                raise StoreWriteFailure("update_log", KeyError(entry_id))
            self.logs[entry_id] = LogEntry.model_validate({**current.model_dump(), **fields})

    def list_logs(self, user_id, item_id=None, since=None, until=None):
        self._check("list_logs")
        entries = [
            e.model_copy(deep=True)
            for e in self.logs.values()
            if e.user_id == user_id and (item_id is None or e.item_id == item_id) and _in_window(e, since, until)
        ]
        return sorted(entries, key=lambda e: ensure_aware(e.performed_at))

    def load_session(self, user_id):
        self._check("load_session")
        data = self.sessions.get(user_id)
        return dict(data) if data is not None else None

    def save_session(self, user_id, data):
        self._check("save_session")
        self.sessions[user_id] = dict(data)

    def insert_ledger_event(self, row):
        self._check("insert_ledger_event")
        with self._lock:
            self.ledger.append(dict(row))


# --- Firestore backend ---

PLANS = "plans"
ITEMS = "trackable_items"
LOGS = "log_entries"
SESSIONS = "sessions"
LEDGER = "tool_ledger"

_firebase_app = None


def get_firestore_client(cred_path: Optional[str] = None):
    """Return the Firestore client, initializing the Firebase app once.

    Credentials: `cred_path`, else FIREBASE_CREDENTIALS / GOOGLE_APPLICATION_CREDENTIALS,
    else the runtime's default application credentials.
    """
    global _firebase_app

    if _firebase_app is None:
        cred_path = cred_path or os.getenv("FIREBASE_CREDENTIALS") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if cred_path and os.path.exists(cred_path):
            _firebase_app = firebase_admin.initialize_app(credentials.Certificate(cred_path))
        else:
            logger.info("[Firebase] No credentials file, falling back to default credentials")
            _firebase_app = firebase_admin.initialize_app()
    return firestore.client()


def _to_doc(model: BaseModel) -> Dict[str, Any]:
    # JSON mode flattens enums; datetimes are put back so Firestore stores timestamps.
    data = model.model_dump(mode="json")
    for name in type(model).model_fields:
        value = getattr(model, name)
        if isinstance(value, datetime):
            data[name] = value
    return data


class FirestoreRepository(Repository):
    def __init__(self, db=None, cred_path: Optional[str] = None):
        self.db = db if db is not None else get_firestore_client(cred_path)

    def _run(self, operation: str, fn):
        try:
            return fn()
        except StoreWriteFailure:
            raise
        except Exception as e:
            logger.error("[Firebase] %s failed: %s", operation, e)
            raise StoreWriteFailure(operation, e) from e

    def _where(self, query, field: str, op: str, value):
        return query.where(filter=FieldFilter(field, op, value))

    def get_plan(self, user_id):
        def _get():
            snapshot = self.db.collection(PLANS).document(user_id).get()
            if not snapshot.exists:
                return None
            return PlanDocument.model_validate(snapshot.to_dict() or {})

        return self._run("get_plan", _get)

    def save_plan(self, plan):
        self._run("save_plan", lambda: self.db.collection(PLANS).document(plan.user_id).set(_to_doc(plan)))

    def list_items(self, user_id, plan_id=None, statuses=None):
        def _list():
            query = self._where(self.db.collection(ITEMS), "user_id", "==", user_id)
            if plan_id:
                query = self._where(query, "plan_id", "==", plan_id)
            wanted = {ItemStatus(s) for s in statuses} if statuses else None
            items = [TrackableItem.model_validate(doc.to_dict()) for doc in query.stream()]
            return [i for i in items if wanted is None or i.status in wanted]

        return self._run("list_items", _list)

    def find_items_by_title(self, user_id, title, plan_id=None):
        def _find():
            query = self._where(self.db.collection(ITEMS), "user_id", "==", user_id)
            query = self._where(query, "title_key", "==", normalize_title(title))
            items = [TrackableItem.model_validate(doc.to_dict()) for doc in query.stream()]
            return [i for i in items if not plan_id or i.plan_id == plan_id]

        return self._run("find_items_by_title", _find)

    def get_item(self, item_id):
        def _get():
            snapshot = self.db.collection(ITEMS).document(item_id).get()
            return TrackableItem.model_validate(snapshot.to_dict()) if snapshot.exists else None

        return self._run("get_item", _get)

    def insert_item(self, item):
        def _insert():
            data = _to_doc(item)
            data["title_key"] = normalize_title(item.title)
            self.db.collection(ITEMS).document(item.id).set(data)

        self._run("insert_item", _insert)

    def update_item(self, item_id, fields):
        def _update():
            ref = self.db.collection(ITEMS).document(item_id)
            snapshot = ref.get()
            if not snapshot.exists:
                raise StoreWriteFailure("update_item", KeyError(item_id))
            updated = TrackableItem.model_validate({**snapshot.to_dict(), **fields})
            data = _to_doc(updated)
            data["title_key"] = normalize_title(updated.title)
            ref.set(data)
            return updated

        return self._run("update_item", _update)

    def insert_log(self, entry):
        self._run("insert_log", lambda: self.db.collection(LOGS).document(entry.id).set(_to_doc(entry)))

    def update_log(self, entry_id, fields):
        def _update():
            ref = self.db.collection(LOGS).document(entry_id)
            snapshot = ref.get()
            if not snapshot.exists:
                raise StoreWriteFailure("update_log", KeyError(entry_id))
            updated = LogEntry.model_validate({**snapshot.to_dict(), **fields})
            ref.set(_to_doc(updated))

        self._run("update_log", _update)

    def list_logs(self, user_id, item_id=None, since=None, until=None):
        def _list():
            # Equality filters only; time windows are applied here to avoid composite indexes.
            query = self._where(self.db.collection(LOGS), "user_id", "==", user_id)
            if item_id:
                query = self._where(query, "item_id", "==", item_id)
            entries = [LogEntry.model_validate(doc.to_dict()) for doc in query.stream()]
            entries = [e for e in entries if _in_window(e, since, until)]
            return sorted(entries, key=lambda e: ensure_aware(e.performed_at))

        return self._run("list_logs", _list)

    def load_session(self, user_id):
        def _load():
            snapshot = self.db.collection(SESSIONS).document(user_id).get()
            return snapshot.to_dict() if snapshot.exists else None

        return self._run("load_session", _load)

    def save_session(self, user_id, data):
        self._run("save_session", lambda: self.db.collection(SESSIONS).document(user_id).set(data))

    def insert_ledger_event(self, row):
        self._run("insert_ledger_event", lambda: self.db.collection(LEDGER).add(row))


def build_repository(backend: str = "memory", cred_path: Optional[str] = None) -> Repository:
    if backend == "firestore":
        return FirestoreRepository(cred_path=cred_path)
    return InMemoryRepository()
