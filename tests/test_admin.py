import sys
from pathlib import Path

from flask import Flask, g, session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import admin  # noqa: E402
from admin import create_admin_blueprint, filter_results, next_sort, normalize_sort, sort_results  # noqa: E402
from exam import create_exam_blueprint  # noqa: E402
from exam_models import ExamRecord, Module, ModuleResult, Question, Trainee, User  # noqa: E402
from session_store import APP_STATE_KEY, SessionPersistence  # noqa: E402
from store import StoreError, TraineeDirectory  # noqa: E402
from views import AdminView, ExamController  # noqa: E402

ADMIN_PW = "letmein-admin"


def _rec(name, score, ts, email="", tid="", rid=None):
    return ExamRecord(User(name, email=email, id=tid), ts, {"m1": ModuleResult(score, 5)}, {}, score, 5, id=rid)


RECORDS = [
    _rec("Juan Dela Cruz", 4, "2025-03-01T08:00:00.000Z", email="juan@cfmti.com", rid="r1"),
    _rec("maria Santos", 5, "2025-03-03T08:00:00.000Z", tid="TID0002", rid="r2"),
    _rec("Ana Reyes", 2, "2025-03-02T08:00:00.000Z", email="ana@example.org", rid="r3"),
]


class FakeStore:
    def __init__(self, records=None, ready=True):
        self.ready = ready
        self.records = list(records or [])
        self.added = {}
        self.deleted = []
        self.fail_writes = False

    def list_results(self):
        return list(self.records)

    def clear_all_results(self):
        count = len(self.records)
        self.records = []
        return count

    def add_trainee(self, username, trainee):
        if self.fail_writes:
            raise StoreError("write refused")
        self.added[username] = trainee

    def delete_trainee(self, username):
        if self.fail_writes:
            raise StoreError("write refused")
        self.deleted.append(username)


def _make_app(store):
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test-secret"
    modules = [Module("m1", "Fundamentals", [Question("q1", "?", {"A": "a"}, "A")])]
    directory = TraineeDirectory({"trainee01": Trainee(password="cfm2025", name="Juan Dela Cruz")})

    def get_controller():
        ctl = g.get("exam_controller")
        if ctl is None:
            ctl = ExamController(SessionPersistence(session), modules, store=store)
            g.exam_controller = ctl
        return ctl

    app.register_blueprint(create_exam_blueprint("", {
        "controller": get_controller, "modules": modules, "directory": directory, "store": store,
    }))
    app.register_blueprint(create_admin_blueprint("", {
        "controller": get_controller, "store": store, "directory": directory,
        "modules": modules, "admin_password": ADMIN_PW,
    }))
    return app


def _capture_render(monkeypatch):
    calls = []

    def fake_render(template_name, **context):
        calls.append((template_name, context))
        return template_name

    monkeypatch.setattr(admin, "render_template", fake_render)
    return calls


def _admin_client(app):
    client = app.test_client()
    resp = client.post("/admin/login", data={"password": ADMIN_PW})
    assert resp.status_code == 302
    return client


# ---- table helpers ---------------------------------------------------------

def test_filter_matches_name_email_or_id_case_insensitively():
    assert [r.id for r in filter_results(RECORDS, "MARIA")] == ["r2"]
    assert [r.id for r in filter_results(RECORDS, "example.org")] == ["r3"]
    assert [r.id for r in filter_results(RECORDS, "tid0002")] == ["r2"]
    assert len(filter_results(RECORDS, "  ")) == 3


def test_sort_by_each_column():
    assert [r.id for r in sort_results(RECORDS, "timestamp", "desc")] == ["r2", "r3", "r1"]
    assert [r.id for r in sort_results(RECORDS, "name", "asc")] == ["r3", "r1", "r2"]
    assert [r.id for r in sort_results(RECORDS, "totalscore", "desc")] == ["r2", "r1", "r3"]


def test_sort_click_toggles_or_resets_direction():
    assert next_sort("timestamp", "desc", "timestamp") == ("timestamp", "asc")
    assert next_sort("timestamp", "asc", "timestamp") == ("timestamp", "desc")
    assert next_sort("timestamp", "asc", "name") == ("name", "desc")
    assert normalize_sort("bogus", "sideways") == ("timestamp", "desc")


# ---- gate ------------------------------------------------------------------

def test_admin_home_requires_login():
    app = _make_app(FakeStore())
    resp = app.test_client().get("/admin/")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/admin/login")


def test_wrong_admin_password_is_rejected(monkeypatch):
    calls = _capture_render(monkeypatch)
    app = _make_app(FakeStore())
    resp = app.test_client().post("/admin/login", data={"password": "nope"})
    assert resp.status_code == 401
    assert calls[-1] == ("admin_login.html", {"error": "Invalid Admin Password."})


def test_admin_home_lists_filtered_sorted_results(monkeypatch):
    calls = _capture_render(monkeypatch)
    app = _make_app(FakeStore(RECORDS))
    client = _admin_client(app)

    resp = client.get("/admin/?q=a&sort=name&dir=asc&detail=r1")
    assert resp.status_code == 200
    template, ctx = calls[-1]
    assert template == "admin.html"
    assert [r.id for r in ctx["results"]] == ["r3", "r1", "r2"]
    assert ctx["detail"]["record"].id == "r1"
    assert ctx["detail"]["rows"][0]["title"] == "Fundamentals"
    assert [u for u, _ in ctx["trainees"]] == ["trainee01"]
    with app.test_request_context():
        assert "dir=desc" in ctx["sort_url"]("name")
    assert ctx["sort_icon"]("name") == "▲"


def test_admin_login_marks_controller_view():
    app = _make_app(FakeStore())
    client = _admin_client(app)
    with client.session_transaction() as sess:
        assert sess[admin.ADMIN_SESSION_KEY] is True
        assert sess[APP_STATE_KEY]["view"]["name"] == AdminView.name


# ---- results actions -------------------------------------------------------

def test_export_csv_download():
    app = _make_app(FakeStore(RECORDS))
    client = _admin_client(app)
    resp = client.get("/admin/export.csv?q=juan")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert "cfmti_results_" in resp.headers["Content-Disposition"]
    lines = resp.get_data(as_text=True).split("\n")
    assert len(lines) == 2
    assert lines[1].startswith('"Juan Dela Cruz","juan@cfmti.com"')


def test_export_with_no_rows_flashes_error():
    app = _make_app(FakeStore(RECORDS))
    client = _admin_client(app)
    resp = client.get("/admin/export.csv?q=nobody")
    assert resp.status_code == 302
    with client.session_transaction() as sess:
        flashes = sess.get("_flashes", [])
    assert ("error", "Export Error: No data to export.") in flashes


def test_clear_results_needs_confirmation():
    store = FakeStore(RECORDS)
    client = _admin_client(_make_app(store))

    client.post("/admin/results/clear")
    assert len(store.records) == 3

    client.post("/admin/results/clear", data={"confirm": "yes"})
    assert store.records == []
    with client.session_transaction() as sess:
        flashes = sess.get("_flashes", [])
    assert ("success", "Success: 3 records permanently deleted.") in flashes


# ---- trainee manager -------------------------------------------------------

def test_add_trainee_validation_errors(monkeypatch):
    calls = _capture_render(monkeypatch)
    store = FakeStore()
    client = _admin_client(_make_app(store))

    resp = client.post("/admin/trainees/add", data={
        "username": "trainee01", "password": "123", "name": "", "email": "nope",
    })
    assert resp.status_code == 400
    errors = calls[-1][1]["trainee_errors"]
    assert errors == {"username": "In use.", "password": "Min 6 chars.", "name": "Required.", "email": "Invalid email."}
    assert calls[-1][1]["trainee_form"]["password"] == ""
    assert store.added == {}


def test_add_trainee_success_and_store_failures(monkeypatch):
    calls = _capture_render(monkeypatch)
    store = FakeStore()
    client = _admin_client(_make_app(store))
    form = {"username": "newbie", "password": "secret99", "name": "New Person", "id": "TID0100"}

    resp = client.post("/admin/trainees/add", data=form)
    assert resp.status_code == 302
    assert store.added["newbie"].id == "TID0100"

    store.fail_writes = True
    resp = client.post("/admin/trainees/add", data=dict(form, username="other"))
    assert resp.status_code == 500
    assert calls[-1][1]["trainee_errors"] == {"form": "Failed to add trainee."}

    store.ready = False
    resp = client.post("/admin/trainees/add", data=dict(form, username="third"))
    assert resp.status_code == 503


def test_delete_trainee_failure_flashes():
    store = FakeStore()
    client = _admin_client(_make_app(store))

    client.post("/admin/trainees/trainee01/delete")
    assert store.deleted == []

    client.post("/admin/trainees/trainee01/delete", data={"confirm": "yes"})
    assert store.deleted == ["trainee01"]

    store.fail_writes = True
    client.post("/admin/trainees/trainee01/delete", data={"confirm": "yes"})
    with client.session_transaction() as sess:
        messages = [m for _, m in sess.get("_flashes", [])]
    assert any(m.startswith("Deletion Failed:") for m in messages)


def test_delete_trainee_explains_why_nothing_happened():
    store = FakeStore()
    client = _admin_client(_make_app(store))

    client.post("/admin/trainees/trainee01/delete")
    with client.session_transaction() as sess:
        flashes = sess.pop("_flashes", [])
    assert ("error", 'Confirm Deletion: confirm to delete trainee "trainee01".') in flashes

    store.ready = False
    client.post("/admin/trainees/trainee01/delete", data={"confirm": "yes"})
    with client.session_transaction() as sess:
        flashes = sess.get("_flashes", [])
    assert ("error", "Database not ready. Nothing was deleted.") in flashes
    assert store.deleted == []
