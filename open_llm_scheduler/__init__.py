from open_llm_scheduler.batch import BatchProgress, BatchResult, WorkItem
from open_llm_scheduler.errors import ErrorKind
from open_llm_scheduler.scheduler import Scheduler

__all__ = ["BatchProgress", "BatchResult", "ErrorKind", "Scheduler", "WorkItem"]
