import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlmodel import Column, Field, SQLModel

from app.events.schemas import RecordSnapshot


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def new_todo_id() -> str:
    return uuid.uuid4().hex


class TodoBase(SQLModel):
    """Base model with shared fields"""

    name: str = Field(min_length=1, max_length=200, index=True)


class Todo(TodoBase, table=True):
    """Database model"""

    __tablename__ = "todos"

    id: str = Field(default_factory=new_todo_id, primary_key=True)
    completed: bool = Field(default=False, index=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def to_snapshot(self) -> RecordSnapshot:
        return RecordSnapshot.model_validate(self)


class TodoCreate(TodoBase):
    """Schema for creating a todo"""

    pass


class TodoUpdate(SQLModel):
    """Schema for updating a todo - all fields optional"""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    completed: bool | None = None


class TodoResponse(TodoBase):
    """Schema for todo responses"""

    id: str
    completed: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
