"""FastAPI application exposing the scheduler over HTTP and a live event websocket."""

from __future__ import annotations

import contextlib
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from ..errors import QueueFullError
from ..events import Event
from ..tasks.base import TaskEvent, TaskOptions, TaskView
from ..tasks.runner import TaskRunner

logger = logging.getLogger(__name__)

# events buffered per websocket client before the oldest are dropped
EVENT_STREAM_SIZE = 1000


class TaskRequest(BaseModel):
    name: str
    description: str = ""
    priority: str = "normal"
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    complexity: str = "low"
    capabilities: List[str] = Field(default_factory=list)
    type: Optional[str] = None
    timeout: Optional[float] = None
    max_retries: int = 0


class TaskResponse(BaseModel):
    id: str
    name: str
    description: str
    priority: str
    status: str
    progress: int
    current_step_id: Optional[str] = None
    completed_steps: int
    total_steps: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    steps: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_view(cls, view: TaskView) -> "TaskResponse":
        return cls(
            id=view.id,
            name=view.name,
            description=view.description,
            priority=view.priority.value,
            status=view.status.value,
            progress=view.progress,
            current_step_id=view.current_step_id,
            completed_steps=view.completed_steps,
            total_steps=view.total_steps,
            created_at=view.created_at,
            started_at=view.started_at,
            completed_at=view.completed_at,
            duration=view.duration,
            result=jsonable_encoder(view.result),
            error=view.error,
            steps={step_id: status.value for step_id, status in view.step_statuses.items()},
        )


class ControlResponse(BaseModel):
    task_id: str
    ok: bool
    status: str


def serialize_event(event: Event) -> Dict[str, Any]:
    payload = event.payload
    if isinstance(payload, TaskEvent):
        body: Any = {
            "task": TaskResponse.from_view(payload.task).model_dump(mode="json"),
            "step_id": payload.step_id,
            "step_status": payload.step_status.value if payload.step_status else None,
        }
    else:
        body = jsonable_encoder(payload)
    return {"event": event.name, "payload": body}


def create_app(runner: TaskRunner | None = None) -> FastAPI:
    runner = runner or TaskRunner()

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await runner.start()
        try:
            yield
        finally:
            await runner.stop()

    app = FastAPI(title="taskswarm", lifespan=lifespan)
    app.state.runner = runner

    def _view(task_id: str) -> TaskView:
        view = runner.scheduler.view(task_id)
        if view is None:
            raise HTTPException(status_code=404, detail=f"Unknown task {task_id}")
        return view

    @app.post("/tasks", response_model=TaskResponse, status_code=201)
    async def create_task(request: TaskRequest) -> TaskResponse:
        try:
            options = TaskOptions.from_mapping(request.model_dump(exclude_none=True))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            task = runner.submit(options)
        except QueueFullError as exc:
            raise HTTPException(status_code=429, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return TaskResponse.from_view(task.snapshot())

    @app.get("/tasks", response_model=List[TaskResponse])
    async def list_tasks() -> List[TaskResponse]:
        return [TaskResponse.from_view(view) for view in runner.scheduler.all_tasks()]

    @app.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str) -> TaskResponse:
        return TaskResponse.from_view(_view(task_id))

    @app.post("/tasks/{task_id}/pause", response_model=ControlResponse)
    async def pause_task(task_id: str) -> ControlResponse:
        _view(task_id)
        ok = runner.scheduler.pause(task_id)
        return ControlResponse(task_id=task_id, ok=ok, status=_view(task_id).status.value)

    @app.post("/tasks/{task_id}/resume", response_model=ControlResponse)
    async def resume_task(task_id: str) -> ControlResponse:
        _view(task_id)
        ok = runner.scheduler.resume(task_id)
        return ControlResponse(task_id=task_id, ok=ok, status=_view(task_id).status.value)

    @app.post("/tasks/{task_id}/cancel", response_model=ControlResponse)
    async def cancel_task(task_id: str) -> ControlResponse:
        _view(task_id)
        ok = runner.scheduler.cancel(task_id)
        return ControlResponse(task_id=task_id, ok=ok, status=_view(task_id).status.value)

    @app.get("/stats")
    async def stats() -> Dict[str, Any]:
        return {
            "scheduler": runner.scheduler.stats(),
            "estimated_wait": runner.scheduler.estimate_wait(),
            "swarm": jsonable_encoder(runner.swarm.status()),
        }

    @app.websocket("/ws/events")
    async def events(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            async with contextlib.aclosing(runner.events.stream(maxsize=EVENT_STREAM_SIZE)) as stream:
                async for event in stream:
                    await websocket.send_text(json.dumps(serialize_event(event), default=str))
        except WebSocketDisconnect:
            logger.debug("Event websocket disconnected")

    return app
