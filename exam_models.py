"""
Data model for the assessment portal.

Everything here round-trips through plain dicts so it can live in the session
cookie and in the JSONB column of the results table.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class User:
    name: str
    email: str = ""
    id: str = ""
    userId: str = ""

    @property
    def display_id(self) -> str:
        return self.email or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email, "id": self.id, "userId": self.userId}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["User"]:
        if not isinstance(data, dict) or not (data.get("name") or "").strip():
            return None
        return cls(
            name=str(data.get("name") or "").strip(),
            email=str(data.get("email") or ""),
            id=str(data.get("id") or ""),
            userId=str(data.get("userId") or ""),
        )


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    choices: Dict[str, str]
    correct: str


@dataclass(frozen=True)
class Module:
    id: str
    title: str
    questions: List[Question]
    item_count: int = 0

    def __post_init__(self):
        if not self.item_count:
            object.__setattr__(self, "item_count", len(self.questions))

    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    def owns(self, question_id: str) -> bool:
        return any(q.id == question_id for q in self.questions)


@dataclass
class ModuleResult:
    score: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return {"score": self.score, "total": self.total}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModuleResult":
        return cls(score=int(data.get("score") or 0), total=int(data.get("total") or 0))


@dataclass
class ExamSession:
    currentModuleIndex: int = 0
    answers: Dict[str, str] = field(default_factory=dict)
    moduleResults: Dict[str, ModuleResult] = field(default_factory=dict)
    submittedModules: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def fresh(cls) -> "ExamSession":
        return cls()

    def is_submitted(self, module_id: str) -> bool:
        return bool(self.submittedModules.get(module_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentModuleIndex": self.currentModuleIndex,
            "answers": dict(self.answers),
            "moduleResults": {k: v.to_dict() for k, v in self.moduleResults.items()},
            "submittedModules": dict(self.submittedModules),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExamSession":
        if not isinstance(data, dict):
            return cls.fresh()
        return cls(
            currentModuleIndex=int(data.get("currentModuleIndex") or 0),
            answers={str(k): str(v) for k, v in (data.get("answers") or {}).items()},
            moduleResults={
                str(k): ModuleResult.from_dict(v)
                for k, v in (data.get("moduleResults") or {}).items()
                if isinstance(v, dict)
            },
            submittedModules={str(k): bool(v) for k, v in (data.get("submittedModules") or {}).items()},
        )


@dataclass
class ExamRecord:
    user: User
    timestamp: str
    moduleResults: Dict[str, ModuleResult]
    answers: Dict[str, str]
    totalScore: int
    totalPossible: int
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "user": self.user.to_dict(),
            "timestamp": self.timestamp,
            "moduleResults": {k: v.to_dict() for k, v in self.moduleResults.items()},
            "answers": dict(self.answers),
            "totalScore": self.totalScore,
            "totalPossible": self.totalPossible,
        }
        if self.id:
            out["id"] = self.id
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExamRecord":
        user = User.from_dict(data.get("user")) or User(name="Unknown")
        return cls(
            id=(str(data["id"]) if data.get("id") else None),
            user=user,
            timestamp=str(data.get("timestamp") or ""),
            moduleResults={
                str(k): ModuleResult.from_dict(v)
                for k, v in (data.get("moduleResults") or {}).items()
                if isinstance(v, dict)
            },
            answers={str(k): str(v) for k, v in (data.get("answers") or {}).items()},
            totalScore=int(data.get("totalScore") or 0),
            totalPossible=int(data.get("totalPossible") or 0),
        )


@dataclass
class Trainee:
    """Credential record, keyed by username in the trainees collection."""

    password: str
    name: str
    email: str = ""
    id: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"password": self.password, "name": self.name, "email": self.email, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trainee":
        return cls(
            password=str(data.get("password") or ""),
            name=str(data.get("name") or ""),
            email=str(data.get("email") or ""),
            id=str(data.get("id") or data.get("trainee_id") or ""),
        )
