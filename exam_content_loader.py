"""Utilities for loading the static exam catalog from disk."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from exam_models import Module, Question, Trainee

EXAM_CONTENT_DIR = Path(__file__).resolve().parent / "exam_content"
EXAM_INDEX_PATH = EXAM_CONTENT_DIR / "content_index.json"
EXAM_MODULES_DIR = EXAM_CONTENT_DIR / "modules"
SEED_TRAINEES_PATH = Path(
    os.getenv("SEED_TRAINEES_FILE") or (EXAM_CONTENT_DIR / "initial_trainees.json")
)


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[exam_content] failed to load '{path}': {exc}")
        return None


def _sorted_modules(modules: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _sort_key(mod: Dict[str, Any]):
        order = mod.get("order")
        try:
            order_val = int(order)
        except Exception:
            order_val = float("inf")
        title = (mod.get("title") or "").lower()
        return (order_val, title)

    return sorted([dict(m) for m in modules if isinstance(m, dict)], key=_sort_key)


def _question_from_dict(raw: Dict[str, Any]) -> Optional[Question]:
    qid = str(raw.get("id") or "").strip()
    choices = raw.get("choices") or {}
    correct = str(raw.get("correct") or "").strip()
    if not qid or not isinstance(choices, dict) or correct not in choices:
        print(f"[exam_content] skipping malformed question: {qid or raw!r}")
        return None
    return Question(
        id=qid,
        text=str(raw.get("text") or "").strip(),
        choices={str(k): str(v) for k, v in choices.items()},
        correct=correct,
    )


def module_from_dict(data: Dict[str, Any]) -> Module:
    questions = [q for q in (_question_from_dict(r) for r in (data.get("questions") or [])) if q]
    return Module(
        id=str(data.get("id") or "").strip(),
        title=str(data.get("title") or "").strip(),
        questions=questions,
        item_count=int(data.get("itemCount") or 0),
    )


def parse_modules(index_data: Any, load_file=None) -> List[Module]:
    """Assemble modules from an index dict; each entry names a module file."""
    if not isinstance(index_data, dict):
        return []
    load_file = load_file or (lambda name: _safe_load_json(EXAM_MODULES_DIR / name))

    modules: List[Module] = []
    for module_meta in _sorted_modules(index_data.get("modules") or []):
        file_name = module_meta.get("file")
        if not file_name:
            continue
        module_data = load_file(str(file_name))
        if not isinstance(module_data, dict):
            continue
        if "title" not in module_data and module_meta.get("title"):
            module_data["title"] = module_meta["title"]
        if "id" not in module_data and module_meta.get("id"):
            module_data["id"] = module_meta["id"]
        module = module_from_dict(module_data)
        if not module.id:
            print(f"[exam_content] module file '{file_name}' has no id; skipped")
            continue
        modules.append(module)
    return modules


@lru_cache(maxsize=1)
def load_exam_modules() -> tuple:
    """Load the ordered module catalog once per process."""
    return tuple(parse_modules(_safe_load_json(EXAM_INDEX_PATH)))


@lru_cache(maxsize=1)
def load_initial_trainees() -> Dict[str, Trainee]:
    """Built-in trainee list (plain-text passwords) used for seeding and offline fallback."""
    data = _safe_load_json(SEED_TRAINEES_PATH)
    if not isinstance(data, dict):
        return {}
    return {
        str(username): Trainee.from_dict(rec)
        for username, rec in data.items()
        if isinstance(rec, dict)
    }


__all__ = ["load_exam_modules", "load_initial_trainees", "parse_modules", "module_from_dict"]
