"""Domain events package."""

from deploykit.domain.events.run_events import (
    RunFinished,
    RunStarted,
    StageFinished,
    StageStarted,
)


__all__ = [
    "RunFinished",
    "RunStarted",
    "StageFinished",
    "StageStarted",
]
