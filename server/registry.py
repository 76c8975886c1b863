"""
In-memory client registry and per-client command queues.

The registry is the only owner of client records and their commands. All
mutation goes through ClientRegistry under a single lock; callers receive
detached snapshots so nothing outside the registry can change shared state.
"""
import copy
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from config import config
from observability import structured_logger, metrics
from presence import is_online

UNKNOWN_DEVICE_LABEL = "unknown-device"


class ClientNotFoundError(LookupError):
    """Raised when an operation references a client id the registry does not hold."""

    def __init__(self, client_id: str):
        super().__init__(f"client not found: {client_id}")
        self.client_id = client_id


class InvalidCommandError(ValueError):
    """Raised when a command cannot be built from the supplied fields."""


def to_millis(ts: float) -> int:
    return int(ts * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Command:
    id: str
    type: str
    payload: Any
    created_at: float
    executed: bool = False

    def copy(self) -> "Command":
        return replace(self, payload=copy.deepcopy(self.payload))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "timestamp": to_millis(self.created_at),
            "executed": self.executed,
        }


class CommandQueue:
    """Append-only command list; pending views filter out executed commands."""

    def __init__(self, commands: Optional[List[Command]] = None):
        self._commands: List[Command] = list(commands or [])

    def append(self, command: Command) -> None:
        self._commands.append(command)

    def pending(self) -> List[Command]:
        return [c for c in self._commands if not c.executed]

    def pending_count(self) -> int:
        return sum(1 for c in self._commands if not c.executed)

    def ack(self, command_id: str) -> bool:
        """Mark a command executed. Returns False when the id is unknown or already acked."""
        for command in self._commands:
            if command.id == command_id:
                if command.executed:
                    return False
                command.executed = True
                return True
        return False

    def compact(self) -> int:
        """Drop executed commands from storage. Returns how many were removed."""
        before = len(self._commands)
        self._commands = [c for c in self._commands if not c.executed]
        return before - len(self._commands)

    def copy(self) -> "CommandQueue":
        return CommandQueue([c.copy() for c in self._commands])

    def __len__(self) -> int:
        return len(self._commands)

    def __iter__(self):
        return iter(list(self._commands))


@dataclass
class ClientAttributes:
    """Caller-reported device state. None means "not reported"."""
    device_label: Optional[str] = None
    foreground_app: Optional[str] = None
    is_foreground: Optional[bool] = None


@dataclass
class ClientRecord:
    id: str
    last_seen: float
    created_at: float
    device_label: str = UNKNOWN_DEVICE_LABEL
    foreground_app: Optional[str] = None
    is_foreground: Optional[bool] = None
    is_online: bool = True
    queue: CommandQueue = field(default_factory=CommandQueue)

    @property
    def pending_commands(self) -> List[Command]:
        return self.queue.pending()

    @property
    def pending_commands_count(self) -> int:
        return self.queue.pending_count()

    def apply(self, attributes: ClientAttributes) -> None:
        # Empty or missing values never overwrite what we already know.
        if attributes.device_label and attributes.device_label != UNKNOWN_DEVICE_LABEL:
            self.device_label = attributes.device_label
        if attributes.foreground_app:
            self.foreground_app = attributes.foreground_app
        if attributes.is_foreground is not None:
            self.is_foreground = attributes.is_foreground

    def snapshot(self) -> "ClientRecord":
        return replace(self, queue=self.queue.copy())

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceLabel": self.device_label,
            "foregroundApp": self.foreground_app,
            "isForeground": self.is_foreground,
            "isOnline": self.is_online,
            "lastSeen": to_millis(self.last_seen),
            "pendingCommandsCount": self.pending_commands_count,
        }


class ClientRegistry:
    """
    Thread-safe registry of polling clients.

    Construct one per process (or per test) and hand it to the HTTP layer and
    the background sweeps. `clock` returns wall-clock seconds and `id_factory`
    returns collision-resistant opaque ids; both are injectable for tests.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = new_id,
        online_timeout: Optional[float] = None,
        eviction_threshold: Optional[float] = None,
    ):
        self._clock = clock
        self._id_factory = id_factory
        self._online_timeout = online_timeout
        self._eviction_threshold = eviction_threshold
        self._clients: Dict[str, ClientRecord] = {}
        self._lock = threading.Lock()

    @property
    def online_timeout(self) -> float:
        if self._online_timeout is not None:
            return self._online_timeout
        return config.online_timeout_seconds

    @property
    def eviction_threshold(self) -> float:
        if self._eviction_threshold is not None:
            return self._eviction_threshold
        return config.eviction_threshold_seconds

    def now(self) -> float:
        return self._clock()

    def _mint_id(self) -> str:
        client_id = self._id_factory()
        while client_id in self._clients:
            client_id = self._id_factory()
        return client_id

    def _create(self, now: float, label: str = UNKNOWN_DEVICE_LABEL) -> ClientRecord:
        record = ClientRecord(id=self._mint_id(), last_seen=now, created_at=now, device_label=label)
        self._clients[record.id] = record
        return record

    def _refresh(self, record: ClientRecord, now: float) -> None:
        record.last_seen = max(record.last_seen, now)
        record.is_online = True

    def upsert_on_poll(
        self,
        client_id: Optional[str],
        attributes: Optional[ClientAttributes] = None,
    ) -> ClientRecord:
        """
        Register or refresh a polling client.

        A missing or unknown id gets a freshly minted id and record. A known id
        has its liveness refreshed and its attributes updated with whatever
        non-empty values the caller reported.
        """
        attributes = attributes or ClientAttributes()
        now = self._clock()

        with self._lock:
            record = self._clients.get(client_id) if client_id else None
            created = record is None
            if created:
                record = self._create(now)
            else:
                self._refresh(record, now)
            record.apply(attributes)
            snapshot = record.snapshot()

        if created:
            metrics.inc_counter("polls_total", {"result": "new_client"})
            structured_logger.log_event(
                "poll.new_client",
                client_id=snapshot.id,
                requested_id=client_id,
                device_label=snapshot.device_label
            )
        else:
            metrics.inc_counter("polls_total", {"result": "checkin"})
            structured_logger.log_event(
                "poll.checkin",
                level="DEBUG",
                client_id=snapshot.id,
                pending=snapshot.pending_commands_count
            )
        return snapshot

    def touch(self, client_id: Optional[str], default_label: str) -> ClientRecord:
        """Check-in that refreshes liveness without reporting attributes."""
        now = self._clock()
        with self._lock:
            record = self._clients.get(client_id) if client_id else None
            created = record is None
            if created:
                record = self._create(now, label=default_label)
            else:
                self._refresh(record, now)
            snapshot = record.snapshot()

        if created:
            structured_logger.log_event("poll.new_client", client_id=snapshot.id, device_label=default_label)
        return snapshot

    def get(self, client_id: str) -> Optional[ClientRecord]:
        now = self._clock()
        with self._lock:
            record = self._clients.get(client_id)
            if record is None:
                return None
            record.is_online = is_online(now, record.last_seen, self.online_timeout)
            return record.snapshot()

    def list_all(self) -> List[ClientRecord]:
        """Snapshot every record with its online flag recomputed."""
        now = self._clock()
        timeout = self.online_timeout
        with self._lock:
            snapshots = []
            for record in self._clients.values():
                record.is_online = is_online(now, record.last_seen, timeout)
                snapshots.append(record.snapshot())
        return snapshots

    def pending_commands(self, client_id: str) -> List[Command]:
        with self._lock:
            record = self._clients.get(client_id)
            if record is None:
                return []
            return [c.copy() for c in record.queue.pending()]

    def enqueue_command(self, client_id: str, command_type: Optional[str], payload: Any = None) -> Command:
        """Append a new pending command to a client's queue. The only write path into a queue."""
        if not command_type:
            raise InvalidCommandError("command type is required")

        with self._lock:
            record = self._clients.get(client_id)
            if record is None:
                raise ClientNotFoundError(client_id)
            command = Command(
                id=self._id_factory(),
                type=command_type,
                payload=copy.deepcopy(payload) if payload is not None else {},
                created_at=self._clock(),
            )
            record.queue.append(command)
            pending = record.queue.pending_count()

        metrics.inc_counter("commands_enqueued_total", {"type": command_type})
        structured_logger.log_event(
            "command.enqueued",
            client_id=client_id,
            command_id=command.id,
            command_type=command_type,
            pending=pending
        )
        return command.copy()

    def ack(self, client_id: str, command_id: str) -> bool:
        """
        Acknowledge a command. Unknown clients, unknown commands and repeated
        acks are accepted silently; the return value says whether state changed.
        """
        with self._lock:
            record = self._clients.get(client_id)
            applied = record.queue.ack(command_id) if record is not None else False

        if applied:
            metrics.inc_counter("command_acks_total", {"outcome": "applied"})
            structured_logger.log_event("command.ack", client_id=client_id, command_id=command_id)
        else:
            metrics.inc_counter("command_acks_total", {"outcome": "ignored"})
            structured_logger.log_event(
                "command.ack_unknown",
                level="DEBUG",
                client_id=client_id,
                command_id=command_id,
                client_known=record is not None
            )
        return applied

    def sweep_offline(self, now: Optional[float] = None) -> int:
        """Store the derived online flag on every record. Returns how many went offline."""
        if now is None:
            now = self._clock()
        timeout = self.online_timeout
        went_offline = []
        with self._lock:
            for record in self._clients.values():
                online = is_online(now, record.last_seen, timeout)
                if record.is_online and not online:
                    went_offline.append(record.id)
                record.is_online = online

        if went_offline:
            structured_logger.log_event("sweep.offline", count=len(went_offline), client_ids=went_offline)
        return len(went_offline)

    def evict_stale(self, now: Optional[float] = None, threshold: Optional[float] = None) -> List[str]:
        """Remove records idle longer than `threshold` seconds. Returns the evicted ids."""
        if now is None:
            now = self._clock()
        if threshold is None:
            threshold = self.eviction_threshold
        with self._lock:
            evicted = [cid for cid, r in self._clients.items() if now - r.last_seen > threshold]
            for cid in evicted:
                del self._clients[cid]
            compacted = sum(r.queue.compact() for r in self._clients.values())

        if evicted:
            metrics.inc_counter("clients_evicted_total", value=len(evicted))
            structured_logger.log_event("sweep.evicted", count=len(evicted), client_ids=evicted)
        if compacted:
            structured_logger.log_event("sweep.compacted", executed_commands_dropped=compacted)
        return evicted

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        timeout = self.online_timeout
        with self._lock:
            records = list(self._clients.values())
            return {
                "clients_total": len(records),
                "clients_online": sum(1 for r in records if is_online(now, r.last_seen, timeout)),
                "pending_commands": sum(r.queue.pending_count() for r in records),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._clients
