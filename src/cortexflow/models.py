"""Project context models consumed by project indexing."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTION = "execution"
    REVIEW = "review"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AgentRole(str, Enum):
    PLANNER = "planner"
    EXECUTOR = "executor"
    REVIEWER = "reviewer"


NoteCategory = Literal["general", "decision", "blocker", "insight"]


class Task(BaseModel):
    """A unit of project work.

    Attributes:
        priority: 1 (highest) to 5 (lowest)
        notes: Free-form notes attached to the task
        dependencies: IDs of tasks this one waits on
    """

    id: str = Field(default_factory=_new_id)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: int = Field(default=3, ge=1, le=5)
    assigned_to: Optional[AgentRole] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    notes: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class AgentNote(BaseModel):
    """A note left on a project by an agent."""

    id: str = Field(default_factory=_new_id)
    agent: AgentRole
    content: str
    timestamp: datetime = Field(default_factory=_now)
    category: NoteCategory = "general"


class Project(BaseModel):
    """A materialized project context: identity, state, tasks and notes."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    phase: Phase = Phase.PLANNING
    version: int = 1
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    tasks: list[Task] = Field(default_factory=list)
    notes: list[AgentNote] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
