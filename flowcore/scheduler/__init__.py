"""Scheduler - Timers and delayed retries"""
from .timer_scheduler import TimerScheduler

__all__ = ["TimerScheduler"]
