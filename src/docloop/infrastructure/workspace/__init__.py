from .run_log import append_event, read_events
from .run_repository import FileSystemRunRepository

__all__ = ["FileSystemRunRepository", "append_event", "read_events"]
