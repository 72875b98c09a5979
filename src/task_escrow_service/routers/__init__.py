"""API routers."""

from task_escrow_service.routers import assignments, health, submissions, tasks, users

__all__ = ["assignments", "health", "submissions", "tasks", "users"]
