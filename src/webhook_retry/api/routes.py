from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from webhook_retry.common.models import EnqueueRequest, TaskStatus, WebhookTask
from webhook_retry.common.store import TaskStore


router = APIRouter()


async def get_task_store() -> TaskStore:
    from webhook_retry.api.app import get_task_store
    return get_task_store()


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.post("", status_code=202)
async def enqueue_task(
    request: EnqueueRequest,
    store: TaskStore = Depends(get_task_store),
):
    try:
        task_id = await store.enqueue(
            request.target_url,
            request.payload,
            max_attempts=request.max_attempts,
            initial_delay=request.initial_delay,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to enqueue webhook for {request.target_url}: {e}")
        raise HTTPException(status_code=500, detail="Failed to enqueue webhook")

    return {"status": "accepted", "task_id": task_id}


@router.get("", response_model=List[WebhookTask])
async def list_tasks(
    status: Optional[TaskStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    store: TaskStore = Depends(get_task_store),
):
    return await store.list_tasks(status=status, limit=limit)


@router.get("/{task_id}", response_model=WebhookTask)
async def get_task(task_id: str, store: TaskStore = Depends(get_task_store)):
    task = await store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
    return task
