"""Orchestrator package - schedules batches through the per-file state machine."""
from .core import BatchOrchestrator
from .file_processor import FileProcessor
from .queue import AdmissionQueue
from .state import TRANSITIONS, FileStateMachine

__all__ = ["BatchOrchestrator", "FileProcessor", "AdmissionQueue", "FileStateMachine", "TRANSITIONS"]
