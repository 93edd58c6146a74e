"""Flow map data model.

A flow map is the directed graph of interview steps. Each option on a step
names the next step id, or a terminal sentinel (``end_call``, ``END`` or
``END (reason)``). Maps are immutable once built and validated on
construction: a ``next`` that is neither a terminal sentinel nor an existing
step id raises :class:`FlowMapError`.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from carecall.errors import FlowMapError

STEP_TYPES = ("question", "statement")
END_CALL = "end_call"

_END_PATTERN = re.compile(r"^END(\s*\(.*\))?$")


def is_terminal_target(target: str) -> bool:
    """True for next-values that end the script instead of naming a step."""
    cleaned = (target or "").strip()
    if cleaned.lower() in (END_CALL, "end"):
        return True
    return bool(_END_PATTERN.match(cleaned))


@dataclass(frozen=True)
class FlowOption:
    label: str
    next: str = END_CALL
    keywords: tuple[str, ...] = ()
    triggers_callback: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "FlowOption":
        if not isinstance(data, dict):
            raise FlowMapError(f"Option must be an object, got {type(data).__name__}")
        label = str(data.get("label") or "").strip()
        if not label:
            raise FlowMapError("Option is missing a label")
        keywords = data.get("keywords") or ()
        if isinstance(keywords, str):
            keywords = (keywords,)
        return cls(
            label=label,
            next=str(data.get("next") or END_CALL).strip(),
            keywords=tuple(str(k).strip() for k in keywords if str(k).strip()),
            triggers_callback=bool(data.get("triggers_callback") or data.get("triggersCallback")),
        )

    def to_dict(self) -> dict:
        data = {"label": self.label, "next": self.next}
        if self.keywords:
            data["keywords"] = list(self.keywords)
        if self.triggers_callback:
            data["triggers_callback"] = True
        return data

    @property
    def is_terminal(self) -> bool:
        return is_terminal_target(self.next)


@dataclass(frozen=True)
class FlowStep:
    id: str
    label: str = ""
    type: str = "question"
    info: str = ""
    question: str = ""
    options: tuple[FlowOption, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "FlowStep":
        if not isinstance(data, dict):
            raise FlowMapError(f"Step must be an object, got {type(data).__name__}")
        step_id = str(data.get("id") or "").strip()
        if not step_id:
            raise FlowMapError("Step is missing an id")
        step_type = str(data.get("type") or "question").strip().lower()
        if step_type not in STEP_TYPES:
            raise FlowMapError(f"Step {step_id!r} has unknown type {step_type!r}")
        return cls(
            id=step_id,
            label=str(data.get("label") or step_id),
            type=step_type,
            info=str(data.get("info") or ""),
            question=str(data.get("question") or ""),
            options=tuple(FlowOption.from_dict(o) for o in data.get("options") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "info": self.info,
            "question": self.question,
            "options": [o.to_dict() for o in self.options],
        }

    @property
    def is_statement(self) -> bool:
        return self.type == "statement"

    @property
    def is_terminal(self) -> bool:
        """A step with no way forward other than ending the call."""
        return all(o.is_terminal for o in self.options)

    def option(self, label: str) -> Optional[FlowOption]:
        lowered = label.lower()
        for opt in self.options:
            if opt.label.lower() == lowered:
                return opt
        return None


@dataclass(frozen=True)
class FlowMap:
    title: str
    steps: tuple[FlowStep, ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_dict(cls, data: dict) -> "FlowMap":
        if not isinstance(data, dict):
            raise FlowMapError("Flow map must be an object")
        steps = data.get("steps")
        if not isinstance(steps, list):
            raise FlowMapError("Flow map is missing a steps list")
        return cls(
            title=str(data.get("title") or "Untitled flow"),
            steps=tuple(FlowStep.from_dict(s) for s in steps),
        )

    def to_dict(self) -> dict:
        return {"title": self.title, "steps": [s.to_dict() for s in self.steps]}

    def validate(self) -> None:
        if not self.steps:
            raise FlowMapError(f"Flow map {self.title!r} has no steps")

        ids = [s.id for s in self.steps]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise FlowMapError(f"Duplicate step ids: {', '.join(duplicates)}")

        known = set(ids)
        dangling = [
            f"{step.id} -> {opt.next}"
            for step in self.steps
            for opt in step.options
            if not opt.is_terminal and opt.next not in known
        ]
        if dangling:
            raise FlowMapError(f"Unresolved next references: {'; '.join(dangling)}")

    @property
    def first_step(self) -> FlowStep:
        return self.steps[0]

    def get_step(self, step_id: Optional[str]) -> Optional[FlowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def has_step(self, step_id: Optional[str]) -> bool:
        return self.get_step(step_id) is not None

    def terminal_step(self) -> Optional[FlowStep]:
        """Last step that can only end the call (the closing), if the map has one."""
        for step in reversed(self.steps):
            if step.is_terminal:
                return step
        return None
