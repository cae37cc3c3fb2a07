"""Background workers for dispatch, prompt generation and cleanup."""

from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest, run_dispatch_consumer
from aistudio.workers.dispatcher import Dispatcher, run_dispatch_worker
from aistudio.workers.prompt_processor import PromptProcessor, run_prompt_processor
from aistudio.workers.reaper import CleanupMode, CleanupSummary, Reaper, run_cleanup_worker

__all__ = [
    "CleanupMode",
    "CleanupSummary",
    "DispatchQueue",
    "DispatchRequest",
    "Dispatcher",
    "PromptProcessor",
    "Reaper",
    "run_cleanup_worker",
    "run_dispatch_consumer",
    "run_dispatch_worker",
    "run_prompt_processor",
]
