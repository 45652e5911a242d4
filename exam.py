# exam.py
# -----------------------------------------------------------------------------
# Trainee-facing screens: auth -> lobby -> exam -> review (+ history).
# - One ExamController per request, state carried in the signed session
# - Module-by-module MCQ with forward-only navigation and per-module scoring
# - Countdown polled by the browser; expiry auto-submits through finalize()
# - History of the trainee's own saved records (store lookup by user id)
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, request, jsonify, render_template, redirect, url_for, flash
)

import exam_session as ops
from csv_export import display_timestamp
from exam_models import Trainee, User
from exam_timer import format_clock
from reviewer import end_review_chat
from scoring import format_percent, module_breakdown, percent, review_rows, total_questions, total_results
from store import StoreError
from validation import clean_trainee_form, validate_login_form, validate_trainee_form

INVALID_LOGIN_MSG = "Invalid username or password."
DB_NOT_READY_MSG = "Database not ready."


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns the trainee Blueprint mounted at base_path ("" = root).
    Required deps: controller() -> ExamController, modules, directory (TraineeDirectory)
    Optional deps: store, chat_client, allow_signup, pass_percent, review_chat_enabled,
                   admin_endpoint_prefix, reviewer_endpoint_prefix
    """
    url_prefix = base_path.rstrip("/") if base_path else None
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    get_controller: Callable = deps["controller"]
    modules: List = list(deps["modules"])
    directory = deps["directory"]

    # ---- Optional deps / config ----------------------------------------------
    store = deps.get("store")
    chat_client = deps.get("chat_client")
    ALLOW_SIGNUP = bool(deps.get("allow_signup", True))
    PASS_PERCENT = float(deps.get("pass_percent") or 70)
    CHAT_ENABLED = bool(deps.get("review_chat_enabled", True))
    ADMIN_BP = deps.get("admin_endpoint_prefix") or "admin"
    REVIEWER_BP = deps.get("reviewer_endpoint_prefix") or "reviewer"

    bp.add_app_template_filter(format_clock, "clock")
    bp.add_app_template_filter(display_timestamp, "ts")

    def _ep(endpoint: str) -> str:
        return f"{bp.name}.{endpoint}"

    def _store_ready() -> bool:
        return bool(store is not None and getattr(store, "ready", False))

    # ------------------------------- routing ----------------------------------
    def _redirect_for(view) -> Any:
        if view.name == "lobby":
            return redirect(url_for(_ep("lobby")))
        if view.name == "exam":
            return redirect(url_for(_ep("exam_page")))
        if view.name == "review":
            return redirect(url_for(_ep("review_page")))
        if view.name == "reviewer":
            return redirect(url_for(f"{REVIEWER_BP}.reviewer_page"))
        if view.name == "admin-login":
            return redirect(url_for(f"{ADMIN_BP}.admin_login"))
        if view.name == "admin":
            return redirect(url_for(f"{ADMIN_BP}.admin_home"))
        return redirect(url_for(_ep("login")))

    def _header_stats(ctl) -> Dict[str, Any]:
        possible = total_questions(modules)
        score, _ = total_results(ctl.session.moduleResults)
        answered = ops.answered_count(ctl.session)
        left = ctl.time_left()
        return {
            "current_score": score,
            "total_possible": possible,
            "answered": answered,
            "progress": (answered / possible) if possible else 0.0,
            "time_left": left,
            "clock": format_clock(left),
        }

    def _expired(ctl) -> bool:
        """Reload/enter guard: an end time already in the past finalizes now."""
        return ctl.restore()

    # ------------------------------- auth -------------------------------------
    @bp.get("/")
    def index():
        ctl = get_controller()
        return _redirect_for(ctl.view)

    @bp.route("/login", methods=["GET", "POST"])
    def login():
        ctl = get_controller()
        if ctl.user is not None and ctl.view.name != "auth":
            return _redirect_for(ctl.view)

        errors: Dict[str, str] = {}
        username = ""
        if request.method == "POST":
            username = (request.form.get("username") or "").strip()
            password = (request.form.get("password") or "").strip()
            errors = validate_login_form(request.form)
            if not errors:
                trainee = directory.authenticate(username, password)
                if trainee is None:
                    print(f"[auth] failed login for '{username}'")
                    errors["form"] = INVALID_LOGIN_MSG
                else:
                    ctl.login(User(name=trainee.name, email=trainee.email, id=trainee.id, userId=username))
                    return redirect(url_for(_ep("lobby")))

        return render_template(
            "auth.html",
            errors=errors,
            username=username,
            allow_signup=ALLOW_SIGNUP,
        ), (400 if errors else 200)

    @bp.route("/signup", methods=["GET", "POST"])
    def signup():
        if not ALLOW_SIGNUP:
            return redirect(url_for(_ep("login")))
        ctl = get_controller()
        form = clean_trainee_form(request.form) if request.method == "POST" else clean_trainee_form({})
        errors: Dict[str, str] = {}

        if request.method == "POST":
            existing = set(directory.usernames())
            if form["username"] and directory.lookup(form["username"]) is not None:
                existing.add(form["username"])
            errors = validate_trainee_form(form, existing)
            if not errors and not _store_ready():
                errors["form"] = DB_NOT_READY_MSG
            if not errors:
                trainee = Trainee(password=form["password"], name=form["name"], email=form["email"], id=form["id"])
                try:
                    store.add_trainee(form["username"], trainee)
                except StoreError as e:
                    print(f"[auth] signup failed for '{form['username']}': {e}")
                    errors["form"] = "Failed to add trainee."
                else:
                    print(f"[auth] new trainee signed up: {form['username']}")
                    ctl.login(User(name=trainee.name, email=trainee.email, id=trainee.id, userId=form["username"]))
                    return redirect(url_for(_ep("lobby")))

        form["password"] = ""
        return render_template("signup.html", form=form, errors=errors), (400 if errors else 200)

    @bp.post("/logout")
    def logout():
        ctl = get_controller()
        who = ctl.user.name if ctl.user else "anonymous"
        end_review_chat(chat_client)
        ctl.logout()
        print(f"[auth] {who} logged out")
        flash("Signed out.", "success")
        return redirect(url_for(_ep("login")))

    # ------------------------------- lobby ------------------------------------
    @bp.get("/lobby")
    def lobby():
        ctl = get_controller()
        if ctl.view.name != "lobby":
            return _redirect_for(ctl.view)
        return render_template(
            "lobby.html",
            user=ctl.user,
            modules=modules,
            total_questions=total_questions(modules),
            chat_enabled=CHAT_ENABLED,
            exam_in_progress=ctl.timer.running(),
        )

    @bp.post("/exam/start")
    def exam_start():
        ctl = get_controller()
        view = ctl.enter_exam()
        if view.name == "exam" and _expired(ctl):
            return redirect(url_for(_ep("review_page")))
        return _redirect_for(ctl.view)

    # ------------------------------- exam -------------------------------------
    @bp.get("/exam")
    def exam_page():
        ctl = get_controller()
        if ctl.view.name != "exam":
            return _redirect_for(ctl.view)
        if _expired(ctl):
            return redirect(url_for(_ep("review_page")))

        view = ctl.view
        module = ctl.current_module()
        if module is None:
            ctl.finalize()
            return redirect(url_for(_ep("review_page")))

        q_index = min(view.question_index, max(0, len(module.questions) - 1))
        question = module.questions[q_index] if module.questions else None
        submitted = ctl.session.is_submitted(module.id)
        result = ctl.module_result()
        module_index = ctl.session.currentModuleIndex
        module_nav = [
            {
                "index": i,
                "title": m.title,
                "submitted": ctl.session.is_submitted(m.id),
                "current": i == module_index,
                "reachable": i >= module_index and not ctl.session.is_submitted(m.id),
            }
            for i, m in enumerate(modules)
        ]
        return render_template(
            "exam.html",
            user=ctl.user,
            module=module,
            module_index=module_index,
            module_count=len(modules),
            module_nav=module_nav,
            question=question,
            question_index=q_index,
            selected=(ctl.session.answers.get(question.id) if question else None),
            select_error=(ops.SELECT_OPTION_MSG if view.select_error else None),
            is_last=ops.is_last_question(module, q_index),
            is_final_module=(module_index >= len(modules) - 1),
            submitted=submitted,
            result=result,
            result_percent=(format_percent(result.score, result.total) if result else None),
            stats=_header_stats(ctl),
            chat_enabled=CHAT_ENABLED,
        )

    def _exam_action(fn: Callable) -> Any:
        ctl = get_controller()
        if ctl.view.name != "exam":
            return _redirect_for(ctl.view)
        if _expired(ctl):
            return redirect(url_for(_ep("review_page")))
        fn(ctl)
        return _redirect_for(ctl.view)

    @bp.post("/exam/answer")
    def exam_answer():
        question_id = (request.form.get("question_id") or "").strip()
        choice = (request.form.get("choice") or "").strip()
        if request.accept_mimetypes.best == "application/json":
            ctl = get_controller()
            if ctl.view.name != "exam" or _expired(ctl):
                return jsonify({"ok": False, "redirect": url_for(_ep("index"))}), 409
            accepted = ctl.answer(question_id, choice)
            return jsonify({"ok": accepted, "stats": _header_stats(ctl)})
        return _exam_action(lambda ctl: ctl.answer(question_id, choice))

    @bp.post("/exam/next")
    def exam_next():
        choice = (request.form.get("choice") or "").strip()
        question_id = (request.form.get("question_id") or "").strip()

        def _next(ctl):
            if choice and question_id:
                ctl.answer(question_id, choice)
            ctl.next_question()
        return _exam_action(_next)

    @bp.post("/exam/prev")
    def exam_prev():
        choice = (request.form.get("choice") or "").strip()
        question_id = (request.form.get("question_id") or "").strip()

        def _prev(ctl):
            if choice and question_id:
                ctl.answer(question_id, choice)
            ctl.previous_question()
        return _exam_action(_prev)

    @bp.post("/exam/submit")
    def exam_submit():
        choice = (request.form.get("choice") or "").strip()
        question_id = (request.form.get("question_id") or "").strip()

        def _submit(ctl):
            if choice and question_id:
                ctl.answer(question_id, choice)
            ctl.submit_module()
        return _exam_action(_submit)

    @bp.post("/exam/proceed")
    def exam_proceed():
        return _exam_action(lambda ctl: ctl.proceed())

    @bp.post("/exam/jump")
    def exam_jump():
        try:
            target = int(request.form.get("module_index") or -1)
        except ValueError:
            target = -1
        return _exam_action(lambda ctl: ctl.jump_to_module(target))

    @bp.get("/exam/timer")
    def exam_timer():
        ctl = get_controller()
        tick = ctl.tick()
        out = {
            "remaining": tick["remaining"],
            "expired": tick["expired"],
            "clock": format_clock(tick["remaining"]),
        }
        if tick["expired"] or ctl.view.name == "review":
            end_review_chat(chat_client)
            out["expired"] = True
            out["redirect"] = url_for(_ep("review_page"))
        return jsonify(out)

    # ------------------------------- review -----------------------------------
    @bp.get("/review")
    def review_page():
        ctl = get_controller()
        view = ctl.view
        if view.name != "review":
            return _redirect_for(view)
        if not view.historical:
            end_review_chat(chat_client)
        record = view.record
        overall = percent(record.totalScore, record.totalPossible)
        return render_template(
            "review.html",
            user=ctl.user,
            record=record,
            historical=view.historical,
            overall_percent=f"{overall:.2f}",
            passing=overall >= PASS_PERCENT,
            pass_percent=PASS_PERCENT,
            breakdown=module_breakdown(modules, record.moduleResults),
            rows=review_rows(modules, record.answers),
        )

    @bp.post("/review/back")
    def review_back():
        ctl = get_controller()
        return _redirect_for(ctl.back_to_lobby())

    # ------------------------------- history ----------------------------------
    def _own_records(ctl) -> Optional[List]:
        if not _store_ready():
            return None
        return store.results_for_user(ctl.user.userId)

    @bp.get("/history")
    def history():
        ctl = get_controller()
        if ctl.user is None:
            return redirect(url_for(_ep("login")))
        if ctl.view.name not in ("lobby", "review") or (ctl.view.name == "review" and not ctl.view.historical):
            return _redirect_for(ctl.view)
        error = None
        records: List = []
        try:
            found = _own_records(ctl)
            if found is None:
                error = "History is unavailable while the database is offline."
            else:
                records = found
        except StoreError as e:
            print(f"[exam] history lookup failed for {ctl.user.userId}: {e}")
            error = "Could not load your exam history. Please try again."
        rows = [
            {
                "id": r.id,
                "timestamp": r.timestamp,
                "score": r.totalScore,
                "possible": r.totalPossible,
                "percent": format_percent(r.totalScore, r.totalPossible),
            }
            for r in records
        ]
        return render_template("history.html", user=ctl.user, rows=rows, error=error)

    @bp.post("/history/<record_id>")
    def history_open(record_id: str):
        ctl = get_controller()
        if ctl.user is None:
            return redirect(url_for(_ep("login")))
        if ctl.view.name not in ("lobby", "review") or (ctl.view.name == "review" and not ctl.view.historical):
            return _redirect_for(ctl.view)
        try:
            records = _own_records(ctl) or []
        except StoreError as e:
            print(f"[exam] history record {record_id} lookup failed: {e}")
            flash("Could not load that exam record. Please try again.", "error")
            return redirect(url_for(_ep("history")))
        record = next((r for r in records if r.id == record_id), None)
        if record is None:
            flash("Exam record not found.", "error")
            return redirect(url_for(_ep("history")))
        return _redirect_for(ctl.open_history_record(record))

    return bp
