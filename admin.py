import hmac
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from flask import (
    Blueprint, Response, render_template, request, redirect, url_for, flash, session
)

from csv_export import EmptyExportError, build_results_csv, display_timestamp, export_filename
from exam_models import ExamRecord, Trainee
from scoring import format_percent, module_breakdown
from store import StoreError
from validation import clean_trainee_form, validate_trainee_form

# =========================
# Admin gating / constants
# =========================
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "cfm-admin")
ADMIN_SESSION_KEY = "is_admin"

SORT_KEYS = ("name", "timestamp", "totalscore")
RESULTS_FETCH_ERROR = "Could not load exam results. Please check your connection and refresh the page."


# ======================================================
# Results table helpers
# ======================================================
def _ts_value(ts: str) -> float:
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def filter_results(records: Sequence[ExamRecord], text: str) -> List[ExamRecord]:
    """Case-insensitive substring match on name, email or trainee id."""
    needle = (text or "").strip().lower()
    if not needle:
        return list(records)
    return [
        r for r in records
        if needle in r.user.name.lower()
        or needle in (r.user.email or "").lower()
        or needle in (r.user.id or "").lower()
    ]


def sort_results(records: Sequence[ExamRecord], sort_by: str = "timestamp", direction: str = "desc") -> List[ExamRecord]:
    if sort_by == "name":
        key: Callable[[ExamRecord], Any] = lambda r: r.user.name.lower()
    elif sort_by == "totalscore":
        key = lambda r: r.totalScore
    else:
        key = lambda r: _ts_value(r.timestamp)
    return sorted(records, key=key, reverse=(direction != "asc"))


def normalize_sort(sort_by: Optional[str], direction: Optional[str]):
    sort_by = (sort_by or "timestamp").lower()
    if sort_by not in SORT_KEYS:
        sort_by = "timestamp"
    direction = "asc" if (direction or "").lower() == "asc" else "desc"
    return sort_by, direction


def next_sort(current_sort: str, current_dir: str, key: str):
    """Clicking the active column flips direction; a new column starts descending."""
    if key == current_sort:
        return key, ("desc" if current_dir == "asc" else "asc")
    return key, "desc"


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Administrator blueprint:
      • Password gate (session flag)
      • Results summary: filter, sort, per-record details, clear-all, CSV export
      • Trainee manager: list, add (validated), delete
    deps:
      - controller() -> ExamController for the current request
      - store (ResultsStore)
      - directory (TraineeDirectory)
      - modules (ordered module list, for titles)
      - admin_password (optional, defaults to ADMIN_PASSWORD)
      - exam_endpoint_prefix (optional, default "exam")
    """
    get_controller = deps["controller"]
    store = deps["store"]
    directory = deps["directory"]
    modules = list(deps.get("modules") or [])
    admin_password = deps.get("admin_password") or ADMIN_PASSWORD
    exam_bp = deps.get("exam_endpoint_prefix") or "exam"

    # Mount at /<BASE_PATH>/admin or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    def _is_admin() -> bool:
        return bool(session.get(ADMIN_SESSION_KEY))

    def _store_ready() -> bool:
        return bool(getattr(store, "ready", False))

    # ---------- Login / logout ----------
    @bp.route("/login", methods=["GET", "POST"])
    def admin_login():
        ctl = get_controller()
        if _is_admin():
            ctl.enter_admin(True)
            return redirect(url_for(f"{bp.name}.admin_home"))

        error = None
        if request.method == "POST":
            password = request.form.get("password") or ""
            if hmac.compare_digest(password.encode("utf-8"), admin_password.encode("utf-8")):
                session[ADMIN_SESSION_KEY] = True
                ctl.enter_admin(True)
                print("[admin] administrator signed in")
                return redirect(url_for(f"{bp.name}.admin_home"))
            print("[admin] rejected admin password")
            error = "Invalid Admin Password."
        else:
            ctl.open_admin_login()

        return render_template("admin_login.html", error=error), (401 if error else 200)

    @bp.post("/logout")
    def admin_logout():
        session.pop(ADMIN_SESSION_KEY, None)
        get_controller().leave_admin()
        return redirect(url_for(f"{exam_bp}.login"))

    # ---------- Summary ----------
    def _load_results():
        if not _store_ready():
            return [], None
        try:
            return store.list_results(), None
        except StoreError as e:
            print(f"[admin] error fetching results: {e}")
            return [], RESULTS_FETCH_ERROR

    def _visible_results():
        sort_by, direction = normalize_sort(request.args.get("sort"), request.args.get("dir"))
        q = (request.args.get("q") or "").strip()
        records, fetch_error = _load_results()
        return sort_results(filter_results(records, q), sort_by, direction), q, sort_by, direction, fetch_error

    def _render_admin_home(trainee_form: Optional[Dict[str, str]] = None,
                           trainee_errors: Optional[Dict[str, str]] = None,
                           status: int = 200):
        visible, q, sort_by, direction, fetch_error = _visible_results()
        detail = None
        detail_id = request.args.get("detail")
        if detail_id:
            rec = next((r for r in visible if r.id == detail_id), None)
            if rec is not None:
                detail = {
                    "record": rec,
                    "rows": module_breakdown(modules, rec.moduleResults),
                }

        def sort_url(key: str) -> str:
            s, d = next_sort(sort_by, direction, key)
            return url_for(f"{bp.name}.admin_home", q=q or None, sort=s, dir=d)

        def sort_icon(key: str) -> str:
            if key != sort_by:
                return "↕"
            return "▲" if direction == "asc" else "▼"

        directory.refresh()
        trainees = sorted(directory.trainees.items())
        form = dict(trainee_form or clean_trainee_form({}))
        form["password"] = ""

        return render_template(
            "admin.html",
            results=visible,
            fetch_error=fetch_error,
            q=q,
            sort_by=sort_by,
            direction=direction,
            sort_url=sort_url,
            sort_icon=sort_icon,
            detail=detail,
            format_percent=format_percent,
            display_timestamp=display_timestamp,
            trainees=trainees,
            trainee_form=form,
            trainee_errors=trainee_errors or {},
            db_ready=_store_ready(),
        ), status

    @bp.get("/")
    def admin_home():
        if not _is_admin():
            return redirect(url_for(f"{bp.name}.admin_login"))
        get_controller().enter_admin(True)
        return _render_admin_home()

    # ---------- Clear / export ----------
    @bp.post("/results/clear")
    def admin_clear_results():
        if not _is_admin():
            return redirect(url_for(f"{bp.name}.admin_login"))
        if (request.form.get("confirm") or "").lower() != "yes":
            flash("Confirm Deletion: tick the confirmation box to delete all results.", "error")
            return redirect(url_for(f"{bp.name}.admin_home"))
        if not _store_ready():
            print("[admin] store not ready; cannot delete results")
            flash("Database not ready. Nothing was deleted.", "error")
            return redirect(url_for(f"{bp.name}.admin_home"))
        count = store.clear_all_results()
        print(f"[admin] cleared {count} exam records")
        flash(f"Success: {count} records permanently deleted.", "success")
        return redirect(url_for(f"{bp.name}.admin_home"))

    @bp.get("/export.csv")
    def admin_export_csv():
        if not _is_admin():
            return redirect(url_for(f"{bp.name}.admin_login"))
        visible, q, sort_by, direction, _ = _visible_results()
        try:
            body = build_results_csv(visible)
        except EmptyExportError as e:
            flash(f"Export Error: {e}", "error")
            return redirect(url_for(f"{bp.name}.admin_home", q=q or None, sort=sort_by, dir=direction))
        print(f"[admin] exported {len(visible)} records to CSV")
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
        )

    # ---------- Trainee manager ----------
    @bp.post("/trainees/add")
    def admin_add_trainee():
        if not _is_admin():
            return redirect(url_for(f"{bp.name}.admin_login"))
        form = clean_trainee_form(request.form)
        errors = validate_trainee_form(form, set(directory.trainees))
        if errors:
            return _render_admin_home(form, errors, status=400)
        if not _store_ready():
            return _render_admin_home(form, {"form": "Database not ready."}, status=503)
        trainee = Trainee(password=form["password"], name=form["name"], email=form["email"], id=form["id"])
        try:
            store.add_trainee(form["username"], trainee)
        except StoreError as e:
            print(f"[admin] add trainee '{form['username']}' failed: {e}")
            return _render_admin_home(form, {"form": "Failed to add trainee."}, status=500)
        print(f"[admin] trainee '{form['username']}' added")
        flash(f"Trainee \"{form['username']}\" added.", "success")
        return redirect(url_for(f"{bp.name}.admin_home"))

    @bp.post("/trainees/<username>/delete")
    def admin_delete_trainee(username: str):
        if not _is_admin():
            return redirect(url_for(f"{bp.name}.admin_login"))
        if (request.form.get("confirm") or "").lower() != "yes":
            flash(f"Confirm Deletion: confirm to delete trainee \"{username}\".", "error")
            return redirect(url_for(f"{bp.name}.admin_home"))
        if not _store_ready():
            print(f"[admin] store not ready; cannot delete trainee '{username}'")
            flash("Database not ready. Nothing was deleted.", "error")
            return redirect(url_for(f"{bp.name}.admin_home"))
        try:
            store.delete_trainee(username)
        except StoreError as e:
            print(f"[admin] delete trainee '{username}' failed: {e}")
            flash(
                f"Deletion Failed: Could not delete trainee \"{username}\". "
                "Please check the connection and try again.",
                "error",
            )
            return redirect(url_for(f"{bp.name}.admin_home"))
        print(f"[admin] trainee '{username}' deleted")
        flash(f"Trainee \"{username}\" deleted.", "success")
        return redirect(url_for(f"{bp.name}.admin_home"))

    return bp
