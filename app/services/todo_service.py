import logging
from datetime import datetime, timezone

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.events.mutation_log import MutationLog
from app.events.schemas import MutationKind
from app.models import Todo, TodoCreate, TodoUpdate

logger = logging.getLogger(__name__)


class TodoService:
    """
    CRUD operations on todos.

    Every committed write is appended to the mutation log with its before and/or
    after image; the event pipeline derives domain events from those entries.
    """

    @staticmethod
    async def create_todo(todo_data: TodoCreate, db: AsyncSession, log: MutationLog):
        todo = Todo.model_validate(todo_data)
        todo.updated_at = todo.created_at
        db.add(todo)
        await db.commit()
        await db.refresh(todo)
        await log.append(MutationKind.INSERT, after=todo.to_snapshot())
        return todo

    @staticmethod
    async def get_all_todos(
        db: AsyncSession,
        skip: int,
        limit: int,
        completed: bool | None = None,
    ):
        query = select(Todo)
        if completed is not None:
            query = query.where(Todo.completed == completed)
        query = query.offset(skip).limit(limit).order_by(Todo.created_at.desc())

        result = await db.exec(query)
        return result.all()

    @staticmethod
    async def get_todo(todo_id: str, db: AsyncSession):
        return await db.get(Todo, todo_id)

    @staticmethod
    async def update_todo(todo_id: str, todo_data: TodoUpdate, db: AsyncSession, log: MutationLog):
        todo = await db.get(Todo, todo_id)
        if not todo:
            return None
        before = todo.to_snapshot()

        update_data = todo_data.model_dump(exclude_unset=True, exclude_none=True)
        todo.sqlmodel_update(update_data)
        todo.updated_at = datetime.now(timezone.utc)
        await db.commit()
        await db.refresh(todo)
        await log.append(MutationKind.MODIFY, before=before, after=todo.to_snapshot())
        return todo

    @staticmethod
    async def complete_todo(todo_id: str, db: AsyncSession, log: MutationLog):
        return await TodoService.update_todo(todo_id, TodoUpdate(completed=True), db, log)

    @staticmethod
    async def delete_todo(todo_id: str, db: AsyncSession, log: MutationLog):
        todo = await db.get(Todo, todo_id)
        if not todo:
            return False
        before = todo.to_snapshot()
        await db.delete(todo)
        await db.commit()
        await log.append(MutationKind.REMOVE, before=before)
        logger.info(f"Deleted todo {todo_id}")
        return True
