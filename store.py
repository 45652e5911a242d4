# store.py
# -----------------------------------------------------------------------------
# Credential / results store on PostgreSQL (psycopg 3 via injected helpers).
# - trainees: credential records keyed by username
# - exam_results: append-only exam records (JSONB)
# Both collections are namespaced by app_id. Every failing call raises
# StoreError; callers decide how to degrade.
# -----------------------------------------------------------------------------

import json
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from exam_models import ExamRecord, Trainee

OFFLINE_MSG = "Offline Mode: Database not connected. Results will not be saved."
TRAINEE_FETCH_ERROR_MSG = "Error loading trainee data. Using local fallback. Results may not save correctly."

Listener = Tuple[Callable[[Any], None], Callable[[Exception], None]]


class StoreError(RuntimeError):
    pass


class StoreUnavailable(StoreError):
    pass


def _normalize_record_json(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str) and raw.strip():
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}
    return {}


class ResultsStore:
    def __init__(self, deps: Dict[str, Any], app_id: str, offline_reason: Optional[str] = None):
        self.fetch_all: Callable = deps["fetch_all"]
        self.fetch_one: Callable = deps["fetch_one"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps.get("execute_returning") or (lambda q, p=None: [])
        self.app_id = app_id
        self.ready = False
        self.offline_reason = offline_reason
        self._lock = threading.Lock()
        self._trainee_listeners: List[Listener] = []
        self._result_listeners: List[Listener] = []

    # ------------------------------------------------------------------ setup
    def connect(self) -> bool:
        """Create tables if needed and check the backend; failure means offline mode."""
        if self.offline_reason:
            print(f"[store] {self.offline_reason}")
            self.ready = False
            return False
        try:
            self.execute("""
                CREATE TABLE IF NOT EXISTS public.trainees (
                    app_id      TEXT NOT NULL,
                    username    TEXT NOT NULL,
                    password    TEXT NOT NULL,
                    name        TEXT NOT NULL,
                    email       TEXT NOT NULL DEFAULT '',
                    trainee_id  TEXT NOT NULL DEFAULT '',
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (app_id, username)
                );
            """)
            self.execute("""
                CREATE TABLE IF NOT EXISTS public.exam_results (
                    id          TEXT PRIMARY KEY,
                    app_id      TEXT NOT NULL,
                    user_id     TEXT,
                    record      JSONB NOT NULL,
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """)
            self.fetch_one("SELECT 1 AS ok FROM public.exam_results WHERE app_id = %s LIMIT 1;", (self.app_id,))
        except Exception as e:
            self.ready = False
            self.offline_reason = (
                f"Could not connect to the database. Running in offline mode. (Error: {e or 'UNKNOWN'})"
            )
            print(f"[store] {self.offline_reason}")
            return False
        self.ready = True
        self.offline_reason = None
        print(f"[store] connected; namespace '{self.app_id}'")
        return True

    def _require_ready(self):
        if not self.ready:
            raise StoreUnavailable(self.offline_reason or OFFLINE_MSG)

    def _call(self, what: str, fn: Callable, *args):
        self._require_ready()
        try:
            return fn(*args)
        except StoreError:
            raise
        except Exception as e:
            print(f"[store] {what} failed: {e}")
            raise StoreError(f"{what} failed: {e}") from e

    # --------------------------------------------------------------- trainees
    def get_trainee(self, username: str) -> Optional[Trainee]:
        row = self._call("get_trainee", self.fetch_one, """
            SELECT username, password, name, email, trainee_id
              FROM public.trainees
             WHERE app_id = %s AND username = %s;
        """, (self.app_id, username))
        if not row:
            return None
        return Trainee(password=row["password"], name=row["name"],
                       email=row.get("email") or "", id=row.get("trainee_id") or "")

    def list_trainees(self) -> Dict[str, Trainee]:
        rows = self._call("list_trainees", self.fetch_all, """
            SELECT username, password, name, email, trainee_id
              FROM public.trainees
             WHERE app_id = %s
             ORDER BY username;
        """, (self.app_id,))
        return {
            r["username"]: Trainee(password=r["password"], name=r["name"],
                                   email=r.get("email") or "", id=r.get("trainee_id") or "")
            for r in (rows or [])
        }

    def add_trainee(self, username: str, trainee: Trainee) -> None:
        """Insert a credential record. The plain password is hashed here."""
        self._call("add_trainee", self.execute, """
            INSERT INTO public.trainees (app_id, username, password, name, email, trainee_id)
            VALUES (%s, %s, %s, %s, %s, %s);
        """, (self.app_id, username, generate_password_hash(trainee.password),
              trainee.name, trainee.email, trainee.id))
        print(f"[store] trainee '{username}' added")
        self._push_trainees()

    def delete_trainee(self, username: str) -> None:
        self._call("delete_trainee", self.execute,
                   "DELETE FROM public.trainees WHERE app_id = %s AND username = %s;",
                   (self.app_id, username))
        print(f"[store] trainee '{username}' deleted")
        self._push_trainees()

    def seed_initial_trainees(self, initial: Dict[str, Trainee]) -> int:
        """Seed only when the first built-in trainee is missing. Returns rows written."""
        if not initial:
            return 0
        first = next(iter(initial))
        if self.get_trainee(first) is not None:
            return 0
        print("[store] initial trainee data not found; seeding")
        for username, trainee in initial.items():
            self._call("seed_trainee", self.execute, """
                INSERT INTO public.trainees (app_id, username, password, name, email, trainee_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (app_id, username) DO NOTHING;
            """, (self.app_id, username, generate_password_hash(trainee.password),
                  trainee.name, trainee.email, trainee.id))
        self._push_trainees()
        return len(initial)

    def listen_for_trainees(self, on_update: Callable[[Dict[str, Trainee]], None],
                            on_error: Callable[[Exception], None]) -> Callable[[], None]:
        return self._subscribe(self._trainee_listeners, self._push_trainees, on_update, on_error)

    # ---------------------------------------------------------------- results
    def save_exam_record(self, record: ExamRecord, attempt_key: Optional[str] = None) -> Optional[str]:
        """
        Append a record and return its id; offline mode logs and skips.
        Records saved with the same attempt_key share one id, so a repeated
        finalize of the same attempt writes nothing new.
        """
        if not self.ready:
            print(f"[store] offline mode: exam record for {record.user.name} not saved")
            return None
        if attempt_key:
            record_id = uuid.uuid5(uuid.NAMESPACE_URL, f"cfmti:{self.app_id}:{attempt_key}").hex
        else:
            record_id = uuid.uuid4().hex
        payload = record.to_dict()
        payload.pop("id", None)
        self._call("save_exam_record", self.execute, """
            INSERT INTO public.exam_results (id, app_id, user_id, record, created_at)
            VALUES (%s, %s, %s, %s::jsonb, now())
            ON CONFLICT (id) DO NOTHING;
        """, (record_id, self.app_id, record.user.userId or None, json.dumps(payload, ensure_ascii=False)))
        print(f"[store] exam record {record_id} saved")
        self._push_results()
        return record_id

    def _records_from_rows(self, rows) -> List[ExamRecord]:
        out: List[ExamRecord] = []
        for r in rows or []:
            data = _normalize_record_json(r.get("record"))
            if not data:
                continue
            rec = ExamRecord.from_dict(data)
            rec.id = str(r.get("id"))
            out.append(rec)
        return out

    def list_results(self) -> List[ExamRecord]:
        rows = self._call("list_results", self.fetch_all, """
            SELECT id, record
              FROM public.exam_results
             WHERE app_id = %s
             ORDER BY created_at DESC;
        """, (self.app_id,))
        return self._records_from_rows(rows)

    def results_for_user(self, user_id: str) -> List[ExamRecord]:
        rows = self._call("results_for_user", self.fetch_all, """
            SELECT id, record
              FROM public.exam_results
             WHERE app_id = %s AND user_id = %s
             ORDER BY created_at DESC;
        """, (self.app_id, user_id))
        return self._records_from_rows(rows)

    def get_result(self, record_id: str) -> Optional[ExamRecord]:
        row = self._call("get_result", self.fetch_one, """
            SELECT id, record
              FROM public.exam_results
             WHERE app_id = %s AND id = %s;
        """, (self.app_id, record_id))
        recs = self._records_from_rows([row] if row else [])
        return recs[0] if recs else None

    def clear_all_results(self) -> int:
        """Delete every record in the namespace. Returns the count, 0 on failure."""
        try:
            rows = self._call("clear_all_results", self.execute_returning,
                              "DELETE FROM public.exam_results WHERE app_id = %s RETURNING id;",
                              (self.app_id,))
        except StoreError as e:
            print(f"[store] error deleting results: {e}")
            return 0
        count = len(rows or [])
        print(f"[store] {count} exam records deleted")
        self._push_results()
        return count

    def listen_for_results(self, on_update: Callable[[List[ExamRecord]], None],
                           on_error: Callable[[Exception], None]) -> Callable[[], None]:
        return self._subscribe(self._result_listeners, self._push_results, on_update, on_error)

    # ---------------------------------------------------------- subscriptions
    def _subscribe(self, bucket: List[Listener], push: Callable, on_update, on_error) -> Callable[[], None]:
        entry: Listener = (on_update, on_error)
        with self._lock:
            bucket.append(entry)
        push([entry])

        def unsubscribe():
            with self._lock:
                if entry in bucket:
                    bucket.remove(entry)
        return unsubscribe

    def _push(self, bucket: List[Listener], loader: Callable, only: Optional[List[Listener]] = None):
        with self._lock:
            listeners = list(only if only is not None else bucket)
        if not listeners:
            return
        try:
            snapshot = loader()
        except Exception as e:
            for _, on_error in listeners:
                on_error(e)
            return
        for on_update, _ in listeners:
            on_update(snapshot)

    def _push_trainees(self, only: Optional[List[Listener]] = None):
        self._push(self._trainee_listeners, self.list_trainees, only)

    def _push_results(self, only: Optional[List[Listener]] = None):
        self._push(self._result_listeners, self.list_results, only)


# =============================================================================
# Local mirror of the trainee collection
# =============================================================================
class TraineeDirectory:
    """
    Last-write-wins copy of the trainees collection, fed by the store
    subscription. Falls back to the built-in list when the store is offline
    or a fetch fails.
    """

    def __init__(self, initial: Dict[str, Trainee]):
        self._seed = dict(initial)
        self._fallback = {
            u: Trainee(generate_password_hash(t.password), t.name, t.email, t.id)
            for u, t in initial.items()
        }
        self.trainees: Dict[str, Trainee] = dict(self._fallback)
        self.fetch_error = False
        self._store: Optional[ResultsStore] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, store: ResultsStore) -> None:
        self.detach()
        self._store = store
        if not store.ready:
            self.trainees = dict(self._fallback)
            return
        self.fetch_error = False
        try:
            store.seed_initial_trainees(self._seed)
            self._unsubscribe = store.listen_for_trainees(self._on_update, self._on_error)
        except Exception as e:
            print(f"[store] caught error during trainee setup: {e}")
            self._on_error(e)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_update(self, trainees: Dict[str, Trainee]) -> None:
        self.trainees = dict(trainees)
        self.fetch_error = False

    def _on_error(self, error: Exception) -> None:
        print(f"[store] error fetching trainees: {error}")
        self.fetch_error = True
        self.trainees = dict(self._fallback)

    def refresh(self) -> None:
        if self._store is None or not self._store.ready:
            return
        try:
            self._on_update(self._store.list_trainees())
        except Exception as e:
            self._on_error(e)

    def lookup(self, username: str) -> Optional[Trainee]:
        """Point lookup against the store, the local mirror when that fails."""
        if self._store is not None and self._store.ready and not self.fetch_error:
            try:
                return self._store.get_trainee(username)
            except StoreError as e:
                print(f"[auth] trainee lookup failed, using local copy: {e}")
        return self.trainees.get(username)

    def authenticate(self, username: str, password: str) -> Optional[Trainee]:
        trainee = self.lookup(username)
        if trainee and check_password_hash(trainee.password, password):
            return trainee
        return None

    def usernames(self) -> List[str]:
        return sorted(self.trainees)
