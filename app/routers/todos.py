from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.database import get_db
from app.events.mutation_log import MutationLog
from app.models import TodoCreate, TodoResponse, TodoUpdate

from app.services.todo_service import TodoService

router = APIRouter(prefix="/todos", tags=["todos"])


def get_mutation_log(request: Request) -> MutationLog:
    return request.app.state.mutation_log


def _not_found(todo_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Todo with id {todo_id} not found",
    )


@router.post("/", response_model=TodoResponse, status_code=status.HTTP_201_CREATED)
async def create_todo(
    todo_data: TodoCreate,
    db: AsyncSession = Depends(get_db),
    log: MutationLog = Depends(get_mutation_log),
):
    """Create a new todo"""
    return await TodoService.create_todo(todo_data, db, log)


@router.get("/", response_model=list[TodoResponse])
async def get_todos(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=100),
    completed: bool | None = None,
    db: AsyncSession = Depends(get_db),
):
    return await TodoService.get_all_todos(db, skip, limit, completed)


@router.get("/{todo_id}", response_model=TodoResponse)
async def get_todo(todo_id: str, db: AsyncSession = Depends(get_db)):
    """Get a specific todo by ID"""
    todo = await TodoService.get_todo(todo_id, db)
    if not todo:
        raise _not_found(todo_id)
    return todo


@router.patch("/{todo_id}", response_model=TodoResponse)
async def update_todo(
    todo_id: str,
    todo_data: TodoUpdate,
    db: AsyncSession = Depends(get_db),
    log: MutationLog = Depends(get_mutation_log),
):
    todo = await TodoService.update_todo(todo_id, todo_data, db, log)
    if not todo:
        raise _not_found(todo_id)
    return todo


@router.delete("/{todo_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_todo(
    todo_id: str,
    db: AsyncSession = Depends(get_db),
    log: MutationLog = Depends(get_mutation_log),
):
    """Delete a todo"""
    if not await TodoService.delete_todo(todo_id, db, log):
        raise _not_found(todo_id)


@router.post("/{todo_id}/complete", response_model=TodoResponse)
async def mark_todo_complete(
    todo_id: str,
    db: AsyncSession = Depends(get_db),
    log: MutationLog = Depends(get_mutation_log),
):
    """Mark a todo as completed"""
    todo = await TodoService.complete_todo(todo_id, db, log)
    if not todo:
        raise _not_found(todo_id)
    return todo
