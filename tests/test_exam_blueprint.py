import sys
from pathlib import Path

from flask import Flask, flash, g, session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import exam  # noqa: E402
from admin import create_admin_blueprint  # noqa: E402
from exam import INVALID_LOGIN_MSG, create_exam_blueprint  # noqa: E402
from exam_models import ExamRecord, Module, ModuleResult, Question, Trainee, User  # noqa: E402
from exam_session import SELECT_OPTION_MSG  # noqa: E402
from reviewer import ReviewChatClient, create_reviewer_blueprint  # noqa: E402
from session_store import SessionPersistence  # noqa: E402
from store import TraineeDirectory  # noqa: E402
from views import ExamController  # noqa: E402

DURATION = 600
SEED = {"trainee01": Trainee(password="cfm2025", name="Juan Dela Cruz", email="juan@cfmti.com")}


def _modules():
    choices = {"A": "one", "B": "two", "C": "three", "D": "four"}
    return [
        Module("m1", "Fundamentals", [
            Question("m1q1", "First?", choices, "A"),
            Question("m1q2", "Second?", choices, "B"),
        ]),
        Module("m2", "Components", [Question("m2q1", "Third?", choices, "C")]),
    ]


class Clock:
    def __init__(self, t=1_700_000_000_000):
        self.t = t

    def __call__(self):
        return self.t


class FakeStore:
    def __init__(self, records=None):
        self.ready = True
        self.records = list(records or [])
        self.added = {}

    def save_exam_record(self, record, attempt_key=None):
        record_id = f"rec-{len(self.records) + 1}"
        record.id = record_id
        self.records.append(record)
        return record_id

    def results_for_user(self, user_id):
        return [r for r in self.records if r.user.userId == user_id]

    def list_results(self):
        return list(self.records)

    def add_trainee(self, username, trainee):
        self.added[username] = trainee


def _make_app(store=None, clock=None, modules=None):
    app = Flask(
        __name__,
        template_folder=str(PROJECT_ROOT / "templates"),
        static_folder=str(PROJECT_ROOT / "static"),
    )
    app.testing = True
    app.secret_key = "test-secret"

    modules = modules if modules is not None else _modules()
    store = store if store is not None else FakeStore()
    directory = TraineeDirectory(SEED)
    clock = clock or Clock()

    def get_controller():
        ctl = g.get("exam_controller")
        if ctl is None:
            ctl = ExamController(
                SessionPersistence(session), modules, store=store,
                duration_seconds=DURATION, clock=clock,
                notify=lambda title, message: flash(f"{title}: {message}", "error"),
            )
            g.exam_controller = ctl
        return ctl

    @app.context_processor
    def inject_user():
        return {"current_user": get_controller().user}

    app.register_blueprint(create_exam_blueprint("", {
        "controller": get_controller, "modules": modules, "directory": directory, "store": store,
    }))
    app.register_blueprint(create_admin_blueprint("", {
        "controller": get_controller, "store": store, "directory": directory, "modules": modules,
    }))
    app.register_blueprint(create_reviewer_blueprint("", {
        "controller": get_controller, "chat_client": ReviewChatClient(None),
    }))
    return app, store


def _capture_render(monkeypatch):
    calls = []

    def fake_render(template_name, **context):
        calls.append((template_name, context))
        return template_name

    monkeypatch.setattr(exam, "render_template", fake_render)
    return calls


def _login(client):
    return client.post("/login", data={"username": "trainee01", "password": "cfm2025"})


def test_login_rejects_bad_password(monkeypatch):
    calls = _capture_render(monkeypatch)
    app, _ = _make_app()
    client = app.test_client()

    resp = client.post("/login", data={"username": "trainee01", "password": "nope"})

    assert resp.status_code == 400
    template, ctx = calls[-1]
    assert template == "auth.html"
    assert ctx["errors"]["form"] == INVALID_LOGIN_MSG
    assert ctx["username"] == "trainee01"


def test_login_requires_fields(monkeypatch):
    calls = _capture_render(monkeypatch)
    app, _ = _make_app()
    resp = app.test_client().post("/login", data={"username": "", "password": ""})
    assert resp.status_code == 400
    assert calls[-1][1]["errors"] == {"username": "Required.", "password": "Required."}


def test_lobby_requires_login():
    app, _ = _make_app()
    resp = app.test_client().get("/lobby")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")


def test_full_exam_flow_reaches_review(monkeypatch):
    calls = _capture_render(monkeypatch)
    clock = Clock()
    app, store = _make_app(clock=clock)
    client = app.test_client()

    resp = _login(client)
    assert resp.headers["Location"].endswith("/lobby")
    client.get("/lobby")
    assert calls[-1][0] == "lobby.html"
    assert calls[-1][1]["user"].name == "Juan Dela Cruz"

    resp = client.post("/exam/start")
    assert resp.headers["Location"].endswith("/exam")
    assert client.get("/exam/timer").get_json() == {"remaining": DURATION, "expired": False, "clock": "10:00"}

    client.post("/exam/next")
    client.get("/exam")
    assert calls[-1][1]["select_error"] == SELECT_OPTION_MSG

    client.post("/exam/next", data={"question_id": "m1q1", "choice": "A"})
    client.get("/exam")
    assert calls[-1][1]["question_index"] == 1
    assert calls[-1][1]["is_last"] is True

    client.post("/exam/submit", data={"question_id": "m1q2", "choice": "B"})
    client.get("/exam")
    ctx = calls[-1][1]
    assert ctx["submitted"] is True
    assert ctx["result_percent"] == "100.0%"
    assert ctx["stats"]["current_score"] == 2

    client.post("/exam/proceed")
    client.post("/exam/submit", data={"question_id": "m2q1", "choice": "D"})
    resp = client.post("/exam/proceed")
    assert resp.headers["Location"].endswith("/review")

    client.get("/review")
    template, ctx = calls[-1]
    assert template == "review.html"
    assert ctx["overall_percent"] == "66.67"
    assert ctx["passing"] is False
    assert ctx["historical"] is False
    assert len(store.records) == 1

    # final results cannot be left for the lobby
    resp = client.post("/review/back")
    assert resp.headers["Location"].endswith("/review")


def test_timer_expiry_redirects_to_review():
    clock = Clock()
    app, store = _make_app(clock=clock)
    client = app.test_client()
    _login(client)
    client.post("/exam/start")
    client.post("/exam/answer", data={"question_id": "m1q1", "choice": "A"})

    clock.t += DURATION * 1000
    body = client.get("/exam/timer").get_json()

    assert body["expired"] is True
    assert body["redirect"].endswith("/review")
    assert len(store.records) == 1
    assert store.records[0].answers == {"m1q1": "A"}

    # a second poll after finalize does not save again
    client.get("/exam/timer")
    assert len(store.records) == 1


def test_answer_json_reports_stats():
    app, _ = _make_app()
    client = app.test_client()
    _login(client)
    client.post("/exam/start")
    resp = client.post(
        "/exam/answer",
        data={"question_id": "m1q1", "choice": "C"},
        headers={"Accept": "application/json"},
    )
    body = resp.get_json()
    assert body["ok"] is True
    assert body["stats"]["answered"] == 1


def test_history_lists_and_opens_own_records(monkeypatch):
    calls = _capture_render(monkeypatch)
    mine = ExamRecord(User("Juan Dela Cruz", userId="trainee01"), "2025-03-01T08:30:00.000Z",
                      {"m1": ModuleResult(1, 2)}, {"m1q1": "A"}, 1, 2, id="old-1")
    theirs = ExamRecord(User("Maria Santos", userId="trainee02"), "2025-03-02T08:30:00.000Z",
                        {"m1": ModuleResult(2, 2)}, {}, 2, 2, id="old-2")
    app, _ = _make_app(store=FakeStore([mine, theirs]))
    client = app.test_client()
    _login(client)

    client.get("/history")
    template, ctx = calls[-1]
    assert template == "history.html"
    assert [r["id"] for r in ctx["rows"]] == ["old-1"]
    assert ctx["rows"][0]["percent"] == "50.0%"

    resp = client.post("/history/old-2")
    assert resp.headers["Location"].endswith("/history")

    resp = client.post("/history/old-1")
    assert resp.headers["Location"].endswith("/review")
    client.get("/review")
    assert calls[-1][1]["historical"] is True

    resp = client.post("/review/back")
    assert resp.headers["Location"].endswith("/lobby")


def test_signup_creates_trainee_and_logs_in(monkeypatch):
    calls = _capture_render(monkeypatch)
    app, store = _make_app()
    client = app.test_client()

    resp = client.post("/signup", data={"username": "trainee01", "password": "secret99", "name": "Dup"})
    assert resp.status_code == 400
    assert calls[-1][1]["errors"]["username"] == "In use."

    resp = client.post("/signup", data={"username": "newbie", "password": "secret99", "name": "New Person"})
    assert resp.headers["Location"].endswith("/lobby")
    assert store.added["newbie"].name == "New Person"


def test_pages_render_with_real_templates():
    app, _ = _make_app()
    client = app.test_client()
    _login(client)

    lobby = client.get("/lobby")
    assert lobby.status_code == 200
    assert "Welcome, Juan Dela Cruz!" in lobby.get_data(as_text=True)

    client.post("/exam/start")
    page = client.get("/exam").get_data(as_text=True)
    assert "First?" in page
    assert "10:00" in page
    assert "/exam/timer" in page


def test_previous_records_the_choice_on_screen():
    app, _ = _make_app()
    client = app.test_client()
    _login(client)
    client.post("/exam/start")
    client.post("/exam/next", data={"question_id": "m1q1", "choice": "A"})

    resp = client.post("/exam/prev", data={"question_id": "m1q2", "choice": "B"})

    assert resp.headers["Location"].endswith("/exam")
    with client.session_transaction() as sess:
        state = sess["cfmti_app_state"]
    assert state["session"]["answers"] == {"m1q1": "A", "m1q2": "B"}
    assert state["view"]["question_index"] == 0


def test_exam_page_posts_answers_as_they_change():
    app, _ = _make_app()
    client = app.test_client()
    _login(client)
    client.post("/exam/start")
    page = client.get("/exam").get_data(as_text=True)
    assert "addEventListener('change'" in page
    assert '"/exam/answer"' in page


def test_header_stats_without_questions_report_zero_possible(monkeypatch):
    calls = _capture_render(monkeypatch)
    app, _ = _make_app(modules=[Module("m0", "Orientation", [])])
    client = app.test_client()
    _login(client)
    client.post("/exam/start")

    client.get("/exam")
    stats = calls[-1][1]["stats"]
    assert stats["total_possible"] == 0
    assert stats["progress"] == 0.0

    # an empty module submits and finishes the exam
    client.post("/exam/submit")
    resp = client.post("/exam/proceed")
    assert resp.headers["Location"].endswith("/review")


def test_reviewer_fallback_marks_answers_only_outside_the_exam():
    app, _ = _make_app()
    client = app.test_client()
    _login(client)

    client.post("/reviewer/open", data={"module_id": "m1"})
    page = client.get("/reviewer/").get_data(as_text=True)
    assert "Displaying Fallback" in page
    assert "Second?" in page
    assert 'title="Correct Answer"' in page

    client.post("/reviewer/close")
    client.post("/exam/start")
    client.post("/reviewer/open", data={"module_id": "m1"})
    page = client.get("/reviewer/").get_data(as_text=True)
    assert "Displaying Fallback" in page
    assert 'title="Correct Answer"' not in page
