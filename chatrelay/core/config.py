"""Orchestrator settings.

Architectural role:
    Deadlines and polling limits consumed by `FallbackOrchestrator`,
    `StreamRelay`, and polling media adapters. Defaults are plain constants;
    environment overrides are applied by
    `chatrelay.llm.provider_config.load_orchestration_config`.
"""

from dataclasses import dataclass, field
from typing import Optional


MEDIA_TASKS = ("image", "video")


@dataclass(frozen=True)
class OrchestrationConfig:
    """Deadlines and polling limits for the fallback orchestrator.

    Attributes:
        timeout_seconds: Per-attempt deadline for chat and optimize.
        media_timeout_seconds: Per-attempt deadline for image and video.
        chunk_timeout_seconds: Optional idle limit between stream chunks.
        poll_max_attempts: Polling ceiling for asynchronous job adapters.
        poll_interval_seconds: Fixed delay between polls.
        task_timeouts: Per-task deadline overrides keyed by task value.
    """

    timeout_seconds: float = 30.0
    media_timeout_seconds: float = 90.0
    chunk_timeout_seconds: Optional[float] = None
    poll_max_attempts: int = 30
    poll_interval_seconds: float = 2.0
    task_timeouts: dict = field(default_factory=dict)

    def timeout_for(self, task_type) -> float:
        """Per-attempt deadline for a task; explicit overrides win."""
        value = getattr(task_type, "value", task_type)
        if value in self.task_timeouts:
            return float(self.task_timeouts[value])
        if value in MEDIA_TASKS:
            return self.media_timeout_seconds
        return self.timeout_seconds
