"""
Job runners for the mailbox ingestion feature.
"""

from .delta_timer_job import start_delta_timer_scheduler
from .ingestion_job import build_ingestion_runtime, start_ingestion_worker

__all__ = ["build_ingestion_runtime", "start_delta_timer_scheduler", "start_ingestion_worker"]
