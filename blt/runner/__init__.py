"""Request handling, job execution and polling."""

from blt.runner.executor import SeriesFilterError, StageExecutor
from blt.runner.guards import StartupGuards
from blt.runner.handler import RequestHandler, SubmissionResult
from blt.runner.pipeline import Pipeline, build_pipeline
from blt.runner.poller import JobPoller, PollCycleResult

__all__ = [
    # Executor
    "StageExecutor",
    "SeriesFilterError",
    # Handler
    "RequestHandler",
    "SubmissionResult",
    # Poller
    "JobPoller",
    "PollCycleResult",
    # Guards
    "StartupGuards",
    # Wiring
    "Pipeline",
    "build_pipeline",
]
