"""Simulated voice-model training jobs.

Each job advances ``current_epoch`` by a fixed step on a fixed period and
pushes progress to the connection that started it. The ticking coroutine is a
task owned by the job, so closing the connection or shutting down cancels it.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .models import Message, push
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

Notify = Callable[[Message], Awaitable[bool]]


@dataclass
class TrainingJob:
    model_name: str
    total_epochs: int
    owner: str
    model_path: str = ""
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_epoch: int = 0
    state: str = "training"  # training | ready
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def progress(self) -> float:
        return self.current_epoch / self.total_epochs * 100

    def advance(self, step: int) -> int:
        self.current_epoch = min(self.current_epoch + step, self.total_epochs)
        if self.current_epoch >= self.total_epochs:
            self.state = "ready"
        return self.current_epoch

    def progress_message(self) -> Message:
        return push(
            "training-progress",
            {
                "modelId": self.job_id,
                "currentEpoch": self.current_epoch,
                "totalEpochs": self.total_epochs,
                "progress": self.progress,
            },
        )

    def complete_message(self) -> Message:
        return push(
            "training-complete",
            {
                "modelId": self.job_id,
                "modelName": self.model_name,
                "status": self.state,
                "modelPath": self.model_path,
            },
        )


class TrainingJobManager:
    def __init__(self, tasks: BackgroundTasks, *, tick_seconds: float = 1.0, epoch_step: int = 10) -> None:
        if epoch_step <= 0:
            raise ValueError("epoch_step must be positive")
        self._tasks = tasks
        self._tick_seconds = tick_seconds
        self._epoch_step = epoch_step
        self._jobs: dict[str, TrainingJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, job_id: str) -> TrainingJob | None:
        return self._jobs.get(job_id)

    def start(self, job: TrainingJob, notify: Notify) -> TrainingJob:
        if job.total_epochs <= 0:
            raise ValueError("total_epochs must be positive")
        self._jobs[job.job_id] = job
        job.task = self._tasks.spawn(job.owner, self._run(job, notify), name=f"training-{job.job_id}")
        logger.info(
            "Training started: %s (%s, %d epochs)", job.job_id, job.model_name, job.total_epochs
        )
        return job

    async def _run(self, job: TrainingJob, notify: Notify) -> None:
        try:
            while job.state == "training":
                await asyncio.sleep(self._tick_seconds)
                job.advance(self._epoch_step)
                await notify(job.progress_message())
            await notify(job.complete_message())
            logger.info("Training complete: %s", job.job_id)
        except asyncio.CancelledError:
            logger.info("Training cancelled: %s at epoch %d", job.job_id, job.current_epoch)
            raise
        finally:
            self._jobs.pop(job.job_id, None)
