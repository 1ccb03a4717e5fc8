"""
Scheduler Service - Package Entry Point
"""

from .orchestrator import SchedulerService

__all__ = ["SchedulerService"]
