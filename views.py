"""
View router and application controller.

The active screen is an explicit tagged variant; `ExamController` owns the
per-browser application state, applies the side effects of each transition
and mirrors everything through `SessionPersistence`.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Optional, Sequence, Union

import exam_session as ops
from exam_models import ExamRecord, ExamSession, Module, ModuleResult, User
from exam_timer import ExamTimer, now_ms
from session_store import SessionPersistence

SAVE_ERROR_TITLE = "Save Error"
SAVE_ERROR_MSG = (
    "Your exam results could not be saved to the database. You can review your "
    "results now, but they will be lost when you log out."
)


# =============================================================================
# View variants
# =============================================================================
@dataclass(frozen=True)
class AuthView:
    name: ClassVar[str] = "auth"


@dataclass(frozen=True)
class LobbyView:
    name: ClassVar[str] = "lobby"


@dataclass(frozen=True)
class ExamView:
    name: ClassVar[str] = "exam"
    question_index: int = 0
    select_error: bool = False


@dataclass(frozen=True)
class ReviewView:
    name: ClassVar[str] = "review"
    record: ExamRecord = None  # type: ignore[assignment]
    historical: bool = False

    def __post_init__(self):
        if self.record is None:
            raise ValueError("review view requires an exam record")


@dataclass(frozen=True)
class AdminLoginView:
    name: ClassVar[str] = "admin-login"


@dataclass(frozen=True)
class AdminView:
    name: ClassVar[str] = "admin"


@dataclass(frozen=True)
class ReviewerView:
    name: ClassVar[str] = "reviewer"
    module_id: str = ""
    return_to: str = "lobby"
    question_index: int = 0


View = Union[AuthView, LobbyView, ExamView, ReviewView, AdminLoginView, AdminView, ReviewerView]

# Views that need a signed-in trainee
TRAINEE_VIEWS = ("lobby", "exam", "review", "reviewer")


def view_to_dict(view: View) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": view.name}
    if isinstance(view, ExamView):
        out.update(question_index=view.question_index, select_error=view.select_error)
    elif isinstance(view, ReviewView):
        out.update(record=view.record.to_dict(), historical=view.historical)
    elif isinstance(view, ReviewerView):
        out.update(module_id=view.module_id, return_to=view.return_to, question_index=view.question_index)
    return out


def view_from_dict(data: Optional[Dict[str, Any]]) -> View:
    data = data if isinstance(data, dict) else {}
    name = data.get("name")
    try:
        if name == "lobby":
            return LobbyView()
        if name == "exam":
            return ExamView(int(data.get("question_index") or 0), bool(data.get("select_error")))
        if name == "review" and isinstance(data.get("record"), dict):
            return ReviewView(ExamRecord.from_dict(data["record"]), bool(data.get("historical")))
        if name == "admin-login":
            return AdminLoginView()
        if name == "admin":
            return AdminView()
        if name == "reviewer":
            return ReviewerView(
                str(data.get("module_id") or ""),
                "exam" if data.get("return_to") == "exam" else "lobby",
                int(data.get("question_index") or 0),
            )
    except Exception as e:
        print(f"[views] unreadable view state {data!r}: {e}")
    return AuthView()


# =============================================================================
# Application state
# =============================================================================
@dataclass
class AppState:
    user: Optional[User] = None
    view: View = field(default_factory=AuthView)
    session: ExamSession = field(default_factory=ExamSession.fresh)
    final_record: Optional[ExamRecord] = None
    finalized: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "view": view_to_dict(self.view),
            "session": self.session.to_dict(),
            "final_record": self.final_record.to_dict() if self.final_record else None,
            "finalized": self.finalized,
        }

    @classmethod
    def load(cls, persistence: SessionPersistence) -> "AppState":
        raw = persistence.load_state()
        final_raw = raw.get("final_record")
        return cls(
            user=persistence.load_user(),
            view=view_from_dict(raw.get("view")),
            session=ExamSession.from_dict(raw.get("session")),
            final_record=ExamRecord.from_dict(final_raw) if isinstance(final_raw, dict) else None,
            finalized=bool(raw.get("finalized")),
        )


# =============================================================================
# Controller
# =============================================================================
class ExamController:
    def __init__(
        self,
        persistence: SessionPersistence,
        modules: Sequence[Module],
        store: Any = None,
        duration_seconds: int = 3600,
        clock: Callable[[], int] = now_ms,
        notify: Optional[Callable[[str, str], None]] = None,
    ):
        self.persistence = persistence
        self.modules = list(modules)
        self.store = store
        self.clock = clock
        self.notify = notify or (lambda title, message: None)
        self.timer = ExamTimer(persistence, duration_seconds)
        self.state = AppState.load(persistence)
        # A view that needs a trainee is never shown without one
        if self.state.user is None and self.state.view.name in TRAINEE_VIEWS:
            self.state.view = AuthView()

    # ---- accessors ----------------------------------------------------------
    @property
    def view(self) -> View:
        return self.state.view

    @property
    def user(self) -> Optional[User]:
        return self.state.user

    @property
    def session(self) -> ExamSession:
        return self.state.session

    def current_module(self) -> Optional[Module]:
        return ops.current_module(self.state.session, self.modules)

    def module_by_id(self, module_id: str) -> Optional[Module]:
        return next((m for m in self.modules if m.id == module_id), None)

    def save(self) -> None:
        self.persistence.save_state(self.state.to_dict())

    # ---- routing ------------------------------------------------------------
    def navigate(self, target: View) -> View:
        current = self.state.view
        if target.name in TRAINEE_VIEWS and self.state.user is None:
            target = AuthView()

        if isinstance(target, LobbyView) and isinstance(current, AuthView):
            self.state.session = ExamSession.fresh()
            self.state.final_record = None
            self.state.finalized = False

        if isinstance(target, ExamView) and isinstance(current, LobbyView):
            self.timer.start(self.clock())

        self.state.view = target
        self.save()
        return target

    def login(self, user: User) -> View:
        if not (user and user.name.strip()):
            return self.state.view
        self.persistence.save_user(user)
        self.state.user = user
        if not isinstance(self.state.view, AuthView):
            self.state.view = AuthView()
        print(f"[auth] trainee session started for {user.name}")
        return self.navigate(LobbyView())

    def logout(self) -> View:
        self.persistence.clear()
        self.state = AppState()
        return self.state.view

    def open_admin_login(self) -> View:
        return self.navigate(AdminLoginView())

    def enter_admin(self, authorized: bool) -> View:
        return self.navigate(AdminView() if authorized else AdminLoginView())

    def leave_admin(self) -> View:
        return self.navigate(AuthView())

    # ---- exam flow ----------------------------------------------------------
    def enter_exam(self) -> View:
        if self.state.finalized and self.state.final_record:
            return self.navigate(ReviewView(self.state.final_record))
        if isinstance(self.state.view, ExamView):
            return self.state.view
        if not isinstance(self.state.view, LobbyView):
            self.navigate(LobbyView())
        view = self.navigate(ExamView(0))
        print(f"[exam] {self._who()} entered module index {self.state.session.currentModuleIndex}")
        return view

    def jump_to_module(self, module_index: int) -> View:
        if ops.jump_to_module(self.state.session, self.modules, module_index):
            if isinstance(self.state.view, ExamView):
                self.state.view = ExamView(0)
                self.save()
                return self.state.view
            return self.enter_exam()
        return self.state.view

    def _exam_view(self) -> Optional[ExamView]:
        return self.state.view if isinstance(self.state.view, ExamView) else None

    def answer(self, question_id: str, choice: str) -> bool:
        view, module = self._exam_view(), self.current_module()
        if view is None or module is None:
            return False
        accepted = ops.set_answer(self.state.session, module, question_id, choice)
        if accepted:
            self.state.view = ExamView(view.question_index, False)
        self.save()
        return accepted

    def next_question(self) -> View:
        view, module = self._exam_view(), self.current_module()
        if view is None or module is None or self.state.session.is_submitted(module.id):
            return self.state.view
        if ops.is_last_question(module, view.question_index):
            return self.submit_module()
        new_index, error = ops.next_question(self.state.session, module, view.question_index)
        self.state.view = ExamView(new_index, bool(error))
        self.save()
        return self.state.view

    def previous_question(self) -> View:
        view = self._exam_view()
        if view is None:
            return self.state.view
        self.state.view = ExamView(ops.previous_question(view.question_index), False)
        self.save()
        return self.state.view

    def submit_module(self) -> View:
        view, module = self._exam_view(), self.current_module()
        if view is None or module is None:
            return self.state.view
        if module.questions and not self.state.session.is_submitted(module.id):
            if not ops.is_last_question(module, view.question_index) or not ops.has_answer(
                self.state.session, module, view.question_index
            ):
                self.state.view = ExamView(view.question_index, True)
                self.save()
                return self.state.view
        result = ops.submit_module(self.state.session, module)
        print(f"[exam] {self._who()} submitted module {module.id}: {result.score}/{result.total}")
        self.state.view = ExamView(view.question_index, False)
        self.save()
        return self.state.view

    def module_result(self) -> Optional[ModuleResult]:
        module = self.current_module()
        if module is None:
            return None
        return self.state.session.moduleResults.get(module.id)

    def proceed(self) -> View:
        module = self.current_module()
        if self._exam_view() is None or module is None or not self.state.session.is_submitted(module.id):
            return self.state.view
        if ops.proceed(self.state.session, self.modules):
            self.state.view = ExamView(0)
            self.save()
            return self.state.view
        self.finalize()
        return self.state.view

    # ---- timer --------------------------------------------------------------
    def _timer_active_view(self) -> bool:
        view = self.state.view
        return isinstance(view, ExamView) or (isinstance(view, ReviewerView) and view.return_to == "exam")

    def tick(self) -> Dict[str, Any]:
        """One timer tick. Finalizes on the first tick that reaches zero."""
        if not self._timer_active_view() or self.state.finalized:
            return {"remaining": None, "expired": False}
        remaining, expired = self.timer.tick(self.clock())
        if expired:
            print(f"[timer] time expired for {self._who()}; auto-submitting")
            self.finalize()
            return {"remaining": 0, "expired": True}
        return {"remaining": remaining, "expired": False}

    def restore(self) -> bool:
        """On reload: an end time already in the past finalizes immediately."""
        if not self._timer_active_view() or self.state.finalized:
            return False
        if self.timer.is_past(self.clock()):
            print(f"[timer] stored end time already passed for {self._who()}; finalizing")
            self.finalize()
            return True
        return self.tick()["expired"]

    def time_left(self) -> Optional[int]:
        if not self._timer_active_view():
            return None
        return self.timer.remaining(self.clock())

    # ---- finalize -----------------------------------------------------------
    def attempt_key(self) -> Optional[str]:
        """Same value for every request finalizing one timed attempt; None when untimed."""
        end = self.timer.end_time
        if end is None:
            return None
        u = self.state.user
        return f"{(u.userId or u.name) if u else 'anonymous'}:{end}"

    def finalize(self) -> ExamRecord:
        if self.state.finalized and self.state.final_record is not None:
            return self.state.final_record

        user = self.state.user or User(name="Unknown")
        record = ops.build_record(self.state.session, user)
        if self.store is not None:
            try:
                record.id = self.store.save_exam_record(record, attempt_key=self.attempt_key())
            except Exception as e:
                print(f"[exam] failed to save exam record for {self._who()}: {e}")
                self.notify(SAVE_ERROR_TITLE, SAVE_ERROR_MSG)
        print(f"[exam] finalized {self._who()}: {record.totalScore}/{record.totalPossible}")

        self.timer.clear()
        self.state.final_record = record
        self.state.finalized = True
        self.state.view = ReviewView(record)
        self.save()
        return record

    # ---- review / history ---------------------------------------------------
    def open_history_record(self, record: ExamRecord) -> View:
        return self.navigate(ReviewView(record, historical=True))

    def back_to_lobby(self) -> View:
        view = self.state.view
        if isinstance(view, ReviewView) and not view.historical:
            return view
        if isinstance(view, ExamView):
            return view
        return self.navigate(LobbyView())

    # ---- reviewer (AI chat) -------------------------------------------------
    def open_reviewer(self, module_id: str) -> View:
        if self.module_by_id(module_id) is None:
            return self.state.view
        view = self.state.view
        if isinstance(view, ExamView):
            target = ReviewerView(module_id, "exam", view.question_index)
        elif isinstance(view, LobbyView):
            target = ReviewerView(module_id, "lobby")
        elif isinstance(view, ReviewerView):
            target = ReviewerView(module_id, view.return_to, view.question_index)
        else:
            return view
        return self.navigate(target)

    def close_reviewer(self) -> View:
        view = self.state.view
        if not isinstance(view, ReviewerView):
            return view
        if view.return_to == "exam" and not self.state.finalized:
            self.state.view = ExamView(view.question_index)
            self.save()
            return self.state.view
        return self.navigate(LobbyView())

    def _who(self) -> str:
        u = self.state.user
        return (u.userId or u.name) if u else "anonymous"
