# scoring.py
# -----------------------------------------------------------------------------
# Flat equality scoring: a question counts when the recorded choice key equals
# the stored correct key. Overall totals are sums of the per-module pairs.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from exam_models import Module, ModuleResult


def score_module(module: Module, answers: Mapping[str, str]) -> ModuleResult:
    score = 0
    for q in module.questions:
        if answers.get(q.id) == q.correct:
            score += 1
    return ModuleResult(score=score, total=len(module.questions))


def percent(score: int, total: int) -> float:
    if not total:
        return 0.0
    return 100.0 * score / total


def format_percent(score: int, total: int, digits: int = 1) -> str:
    return f"{percent(score, total):.{digits}f}%"


def total_results(module_results: Mapping[str, ModuleResult]) -> Tuple[int, int]:
    """(total_score, total_possible) over the modules that were actually submitted."""
    total_score = sum(r.score for r in module_results.values())
    total_possible = sum(r.total for r in module_results.values())
    return total_score, total_possible


def total_questions(modules: Iterable[Module]) -> int:
    return sum(len(m.questions) for m in modules)


def module_breakdown(modules: Sequence[Module], module_results: Mapping[str, ModuleResult]) -> List[Dict[str, Any]]:
    """Per-module rows for the results screen and admin details; unknown ids fall back to the id."""
    titles = {m.id: m.title for m in modules}
    rows: List[Dict[str, Any]] = []
    for module_id, res in module_results.items():
        rows.append({
            "id": module_id,
            "title": titles.get(module_id) or module_id,
            "score": res.score,
            "total": res.total,
            "percent": format_percent(res.score, res.total).rstrip("%"),
        })
    return rows


def review_rows(modules: Sequence[Module], answers: Mapping[str, str]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for m_idx, module in enumerate(modules, start=1):
        for q_idx, q in enumerate(module.questions, start=1):
            given = answers.get(q.id)
            rows.append({
                "module_number": m_idx,
                "module_title": module.title,
                "question_number": q_idx,
                "question_text": q.text,
                "user_answer": given or "N/A",
                "correct_answer": q.correct,
                "is_correct": given == q.correct,
            })
    return rows
