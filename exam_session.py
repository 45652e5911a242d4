# exam_session.py
# -----------------------------------------------------------------------------
# Operations on one exam attempt (ExamSession). The in-module question cursor
# is owned by the exam view and passed in/out explicitly.
# -----------------------------------------------------------------------------

from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

from exam_models import ExamRecord, ExamSession, Module, ModuleResult, User
from scoring import score_module, total_results

SELECT_OPTION_MSG = "Please select an option to proceed."


def current_module(session: ExamSession, modules: Sequence[Module]) -> Optional[Module]:
    if 0 <= session.currentModuleIndex < len(modules):
        return modules[session.currentModuleIndex]
    return None


def set_answer(session: ExamSession, module: Module, question_id: str, choice: str) -> bool:
    """Record or overwrite an answer. Ignored once the module is submitted."""
    if session.is_submitted(module.id):
        return False
    question = next((q for q in module.questions if q.id == question_id), None)
    if question is None or choice not in question.choices:
        return False
    session.answers[question_id] = choice
    return True


def has_answer(session: ExamSession, module: Module, question_index: int) -> bool:
    if not (0 <= question_index < len(module.questions)):
        return False
    return bool(session.answers.get(module.questions[question_index].id))


def next_question(session: ExamSession, module: Module, question_index: int) -> Tuple[int, Optional[str]]:
    """
    Advance the cursor. Returns (new_index, error). The cursor does not move
    past the last question; submitting is a separate step.
    """
    if not has_answer(session, module, question_index):
        return question_index, SELECT_OPTION_MSG
    last = max(0, len(module.questions) - 1)
    return min(question_index + 1, last), None


def previous_question(question_index: int) -> int:
    return max(0, question_index - 1)


def is_last_question(module: Module, question_index: int) -> bool:
    return question_index >= len(module.questions) - 1


def submit_module(session: ExamSession, module: Module) -> ModuleResult:
    """Score and lock the module. Re-submitting returns the stored result untouched."""
    if session.is_submitted(module.id) and module.id in session.moduleResults:
        return session.moduleResults[module.id]
    result = score_module(module, session.answers)
    session.moduleResults[module.id] = result
    session.submittedModules[module.id] = True
    return result


def proceed(session: ExamSession, modules: Sequence[Module]) -> bool:
    """Move to the next module. False means there is none left and the exam should finalize."""
    nxt = session.currentModuleIndex + 1
    if nxt < len(modules):
        session.currentModuleIndex = nxt
        return True
    return False


def jump_to_module(session: ExamSession, modules: Sequence[Module], module_index: int) -> bool:
    """Forward-only jump to an unsubmitted module."""
    if not (0 <= module_index < len(modules)):
        return False
    if module_index < session.currentModuleIndex:
        return False
    if session.is_submitted(modules[module_index].id):
        return False
    session.currentModuleIndex = module_index
    return True


def answered_count(session: ExamSession) -> int:
    return sum(1 for v in session.answers.values() if v)


def now_iso(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_record(session: ExamSession, user: User, now: Optional[datetime] = None) -> ExamRecord:
    total_score, total_possible = total_results(session.moduleResults)
    return ExamRecord(
        user=user,
        timestamp=now_iso(now),
        moduleResults=dict(session.moduleResults),
        answers=dict(session.answers),
        totalScore=total_score,
        totalPossible=total_possible,
    )
