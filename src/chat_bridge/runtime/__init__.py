from chat_bridge.runtime.process_lock import LockResult, ProcessLock
from chat_bridge.runtime.queues import ConversationQueue, Job, JobState, QueueRegistry

__all__ = [
    "ConversationQueue",
    "Job",
    "JobState",
    "LockResult",
    "ProcessLock",
    "QueueRegistry",
]
