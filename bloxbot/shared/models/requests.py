"""Interactive requests the engine raises mid-turn: questions and permissions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class Question:
    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multiple: bool = False


@dataclass(frozen=True)
class QuestionRequest:
    id: str
    session_id: str
    questions: tuple[Question, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionRequest:
        questions = []
        for q in data.get("questions") or ():
            options = tuple(
                QuestionOption(label=o.get("label", ""), description=o.get("description", ""))
                for o in q.get("options") or ()
            )
            questions.append(Question(
                question=q.get("question", ""),
                header=q.get("header", ""),
                options=options,
                multiple=bool(q.get("multiple", False)),
            ))
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            questions=tuple(questions),
        )


@dataclass(frozen=True)
class PermissionRequest:
    id: str
    session_id: str
    permission: str = ""
    patterns: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRequest:
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            permission=data.get("permission", ""),
            patterns=tuple(data.get("patterns") or ()),
            metadata=data.get("metadata") or {},
        )


# Replies accepted by the engine's permission endpoint.
PERMISSION_REPLIES = ("once", "always", "reject")
