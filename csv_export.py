# csv_export.py
# -----------------------------------------------------------------------------
# Results export: one row per exam record plus a Score/Possible column pair for
# every module id seen across the exported records (sorted by id).
# -----------------------------------------------------------------------------

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence

from exam_models import ExamRecord, ModuleResult

BASE_HEADERS = ["Name", "Email/ID", "Timestamp", "TotalScore", "TotalPossible"]


class EmptyExportError(ValueError):
    pass


def display_timestamp(ts: Optional[str]) -> str:
    """ISO timestamp -> 'YYYY-MM-DD HH:MM:SS' (UTC). Unparseable values pass through."""
    if not ts:
        return ""
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return str(ts)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _quote(value) -> str:
    return '"' + str(value).replace('"', '""') + '"'


def module_columns(records: Iterable[ExamRecord]) -> List[str]:
    ids = set()
    for r in records:
        ids.update(r.moduleResults.keys())
    return sorted(ids)


def build_results_csv(records: Sequence[ExamRecord]) -> str:
    if not records:
        raise EmptyExportError("No data to export.")

    module_ids = module_columns(records)
    headers = list(BASE_HEADERS)
    for mid in module_ids:
        headers.append(f"Module_{mid}_Score")
        headers.append(f"Module_{mid}_Possible")

    lines = [",".join(headers)]
    for r in records:
        row = [
            r.user.name,
            r.user.display_id,
            display_timestamp(r.timestamp),
            r.totalScore,
            r.totalPossible,
        ]
        for mid in module_ids:
            res = r.moduleResults.get(mid) or ModuleResult(score=0, total=0)
            row.append(res.score)
            row.append(res.total)
        lines.append(",".join(_quote(v) for v in row))
    return "\n".join(lines)


def export_filename(today: Optional[date] = None) -> str:
    today = today or datetime.now(timezone.utc).date()
    return f"cfmti_results_{today.isoformat()}.csv"
