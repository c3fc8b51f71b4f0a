"""Controller module for Agent Farm."""

from agent_farm.controller.models import ClusterRecord, TaskRecord, WorkerRecord

__all__ = ["ClusterRecord", "TaskRecord", "WorkerRecord"]
