from app.tasks.collections import run_dunning_reminders
from app.tasks.events import replay_failed_events

__all__ = [
    "replay_failed_events",
    "run_dunning_reminders",
]
