"""
Explicit save/load boundary for per-browser state.

Production wraps the signed Flask session cookie; tests pass a plain dict.
"""

import json
from typing import Any, Dict, MutableMapping, Optional

from exam_models import User

USER_KEY = "cfmti_user"
EXAM_END_TIME_KEY = "cfmti_exam_end_time"
APP_STATE_KEY = "cfmti_app_state"


class SessionPersistence:
    def __init__(self, storage: MutableMapping[str, Any]):
        self._storage = storage

    # ---- user ---------------------------------------------------------------
    def load_user(self) -> Optional[User]:
        raw = self._storage.get(USER_KEY)
        if not raw:
            return None
        try:
            return User.from_dict(json.loads(raw))
        except Exception as e:
            print(f"[session] error loading user session: {e}")
            return None

    def save_user(self, user: User) -> None:
        self._storage[USER_KEY] = json.dumps(user.to_dict())

    def clear_user(self) -> None:
        self._storage.pop(USER_KEY, None)

    # ---- exam end time (epoch ms, stored as a string) ------------------------
    def load_end_time(self) -> Optional[int]:
        raw = self._storage.get(EXAM_END_TIME_KEY)
        if raw in (None, ""):
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            print(f"[session] ignoring unreadable end time: {raw!r}")
            self._storage.pop(EXAM_END_TIME_KEY, None)
            return None

    def save_end_time(self, end_ms: int) -> None:
        self._storage[EXAM_END_TIME_KEY] = str(int(end_ms))

    def clear_end_time(self) -> None:
        self._storage.pop(EXAM_END_TIME_KEY, None)

    # ---- app state ----------------------------------------------------------
    def load_state(self) -> Dict[str, Any]:
        raw = self._storage.get(APP_STATE_KEY)
        return raw if isinstance(raw, dict) else {}

    def save_state(self, state: Dict[str, Any]) -> None:
        self._storage[APP_STATE_KEY] = state

    def clear(self) -> None:
        for key in (USER_KEY, EXAM_END_TIME_KEY, APP_STATE_KEY):
            self._storage.pop(key, None)
