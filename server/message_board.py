"""
Bounded broadcast message board polled by clients using a timestamp cursor.
"""
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Optional, Tuple

from config import config
from observability import structured_logger


@dataclass(frozen=True)
class Message:
    id: str
    content: str
    timestamp: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "content": self.content, "timestamp": self.timestamp}


class MessageBoard:
    """
    Thread-safe ring of the most recent messages.
    Timestamps are strictly increasing so `since()` never skips a message
    posted within the same millisecond as the caller's cursor.
    """

    def __init__(self, max_messages: Optional[int] = None, clock: Callable[[], float] = time.time):
        self._messages: deque[Message] = deque(maxlen=max_messages or config.message_history_limit)
        self._clock = clock
        self._lock = threading.Lock()

    def post(self, content: str) -> Message:
        with self._lock:
            ts = int(self._clock() * 1000)
            if self._messages and ts <= self._messages[-1].timestamp:
                ts = self._messages[-1].timestamp + 1
            message = Message(id=str(uuid.uuid4()), content=content, timestamp=ts)
            self._messages.append(message)
            size = len(self._messages)

        structured_logger.log_event("message.posted", message_id=message.id, board_size=size)
        return message

    def since(self, last_timestamp: int = 0) -> Tuple[List[Message], int]:
        """Messages newer than `last_timestamp`, plus the cursor to use next time."""
        with self._lock:
            newer = [m for m in self._messages if m.timestamp > last_timestamp]
        cursor = max((m.timestamp for m in newer), default=last_timestamp)
        return newer, cursor

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
