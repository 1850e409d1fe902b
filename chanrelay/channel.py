"""Channels: message queues with subscribers, ownership and access control."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL_ID = 0

# Wire values of the connection types and of the unsubscribed message type.
_SERVER_CONNECTION = 1
_CLIENT_CONNECTION = 2
_MSG_UNSUB_FROM_CHANNEL = 7

_QUEUE_SIZE = 1024
_NS_PER_MS = 1_000_000


class ChannelType(IntEnum):
    UNKNOWN = 0
    GLOBAL = 1
    PRIVATE = 2
    SUBWORLD = 3
    SPATIAL = 4
    ENTITY = 5
    TEST = 100


class ChannelState(IntEnum):
    INIT = 0
    OPEN = 1
    HANDOVER = 2


class BroadcastType(IntFlag):
    NO_BROADCAST = 0
    ALL = 1
    ALL_BUT_SENDER = 2
    ALL_BUT_OWNER = 4
    SINGLE_CONNECTION = 8
    ADJACENT_CHANNELS = 16
    ALL_BUT_CLIENT = 32
    ALL_BUT_SERVER = 64

    def check(self, value: int) -> bool:
        """Return True if this flag is set in ``value``."""
        return (int(value) & int(self)) > 0


class ChannelAccessType(IntEnum):
    SUB = 0
    UNSUB = 1
    REMOVE = 2


class ChannelAccessLevel(IntEnum):
    NONE = 0
    OWNER_ONLY = 1
    OWNER_AND_GLOBAL_OWNER = 2
    ANY = 3


class AccessDenied(Exception):
    """A connection is not allowed to perform an operation on a channel."""


class NoneAccessError(AccessDenied):
    def __init__(self) -> None:
        super().__init__("none can access")


class OwnerOnlyAccessError(AccessDenied):
    def __init__(self) -> None:
        super().__init__("only the channel owner can access")


class OwnerAndGlobalOwnerAccessError(AccessDenied):
    def __init__(self) -> None:
        super().__init__("only the channel owner or global channel owner can access")


class IllegalAccessLevelError(AccessDenied):
    def __init__(self) -> None:
        super().__init__("illegal channel access level")


class ChannelFullError(Exception):
    """No free channel id is left in the range of the requested channel type."""


def add_ms(t: int, ms: int) -> int:
    """Add milliseconds to a channel time expressed in nanoseconds."""
    return t + ms * _NS_PER_MS


def offset_ms(t: int, ms: int) -> int:
    """Shift a channel time (nanoseconds) by a signed number of milliseconds."""
    return t + ms * _NS_PER_MS


def _type_name(channel_type: int) -> str:
    try:
        return ChannelType(channel_type).name
    except ValueError:
        return str(int(channel_type))


@dataclass
class ACLSettings:
    sub: int = ChannelAccessLevel.NONE
    unsub: int = ChannelAccessLevel.NONE
    remove: int = ChannelAccessLevel.NONE

    def level_for(self, access_type: ChannelAccessType) -> int:
        return {
            ChannelAccessType.SUB: self.sub,
            ChannelAccessType.UNSUB: self.unsub,
            ChannelAccessType.REMOVE: self.remove,
        }.get(access_type, ChannelAccessLevel.NONE)


@dataclass
class ChannelSettings:
    tick_interval_ms: int = 20
    remove_channel_after_owner_removed: bool = False
    acl_settings: ACLSettings = field(default_factory=ACLSettings)


@dataclass
class RegistrySettings:
    spatial_channel_id_start: int = 0x10000
    entity_channel_id_start: int = 0x80000
    channel_settings: dict[int, ChannelSettings] = field(default_factory=dict)

    def get_channel_settings(self, channel_type: int) -> ChannelSettings:
        """Settings for a channel type, or the defaults when none are configured."""
        return self.channel_settings.get(channel_type) or ChannelSettings()


@dataclass
class MessageContext:
    msg_type: int = 0
    msg: Any = None
    connection: Any = None
    channel: Channel | None = None
    broadcast: int = 0
    stub_id: int = 0
    channel_id: int = 0
    arrival_time: int = 0


MessageHandler = Callable[[MessageContext], None]


class _ConnectionLike(Protocol):
    connection_type: int

    def is_closing(self) -> bool: ...

    def send(self, ctx: MessageContext) -> None: ...


class Channel:
    """A message queue with subscribed connections, processed one tick at a time."""

    def __init__(
        self,
        channel_id: int,
        channel_type: int,
        owner: _ConnectionLike | None,
        registry: ChannelRegistry,
    ) -> None:
        self.id = channel_id
        self.channel_type = channel_type
        self.owner = owner
        self.metadata = ""
        self.data: Any = None
        self.tick_frames = 0
        self._registry = registry
        self._subscriptions: dict[Any, Any] = {}
        self._lock = threading.Lock()
        self._queue: queue.Queue[tuple[MessageContext, MessageHandler]] = queue.Queue(
            maxsize=_QUEUE_SIZE
        )
        self._start_ns = time.monotonic_ns()
        settings = registry.settings.get_channel_settings(channel_type)
        self.tick_interval = settings.tick_interval_ms / 1000.0
        self._removing = False
        self._closed = False
        self.state = ChannelState.OPEN if self.has_owner() else ChannelState.INIT
        self.logger = logging.LoggerAdapter(
            logger, {"channel_type": _type_name(channel_type), "channel_id": channel_id}
        )

    @property
    def is_removing(self) -> bool:
        return self._removing

    def __str__(self) -> str:
        return f"Channel({_type_name(self.channel_type)} {self.id})"

    def put_message(self, ctx: MessageContext, handler: MessageHandler) -> None:
        """Queue a message to be handled in the next tick; dropped while removing."""
        if self._removing:
            return
        queued = dataclasses.replace(ctx, channel=self, arrival_time=self.get_time())
        self._queue.put((queued, handler))

    def execute(self, callback: Callable[[Channel], None]) -> None:
        """Run ``callback`` with this channel during its next tick."""
        if self._closed:
            raise RuntimeError(f"{self} has been removed")
        self._queue.put((MessageContext(), lambda _ctx: callback(self)))

    def get_time(self) -> int:
        """Nanoseconds elapsed since the channel was created."""
        return time.monotonic_ns() - self._start_ns

    def tick(self) -> None:
        """Run one frame: handle queued messages, then drop closed subscribers."""
        if self._removing:
            return
        started = time.monotonic()
        self.tick_frames += 1
        self._tick_messages(started)
        self._tick_connections()

    def run(self, stop: threading.Event | None = None) -> None:
        """Tick at the channel's interval until it is removed or ``stop`` is set."""
        while not self._removing and not (stop is not None and stop.is_set()):
            started = time.monotonic()
            self.tick()
            time.sleep(max(0.0, self.tick_interval - (time.monotonic() - started)))

    def _tick_messages(self, started: float) -> None:
        while True:
            try:
                ctx, handler = self._queue.get_nowait()
            except queue.Empty:
                return
            if ctx.msg is None:
                handler(ctx)
                continue
            if ctx.connection is None:
                self.logger.warning(
                    "drops message as the sender is lost (msg_type=%s)", ctx.msg_type
                )
                continue
            handler(ctx)
            if self.tick_interval > 0 and time.monotonic() - started >= self.tick_interval:
                self.logger.warning(
                    "spent too long handling messages, %d left for the next tick",
                    self._queue.qsize(),
                )
                return

    def _tick_connections(self) -> None:
        with self._lock:
            closing = [conn for conn in self._subscriptions if conn.is_closing()]
            for conn in closing:
                del self._subscriptions[conn]

        for conn in closing:
            self.logger.info("removed subscription of a disconnected endpoint")
            owner = self.owner
            if owner is None:
                continue
            if owner is conn:
                self.owner = None
                if self.channel_type == ChannelType.GLOBAL:
                    self._registry._emit_global_unpossessed()
                settings = self._registry.settings.get_channel_settings(self.channel_type)
                if settings.remove_channel_after_owner_removed:
                    self._removing = True
                    registry = self._registry
                    global_channel = registry.global_channel
                    if global_channel is not None:
                        global_channel.execute(lambda _ch: registry.remove_channel(self))
                    self.logger.info("removing channel after the owner is removed")
                    return
            else:
                owner.send(
                    MessageContext(
                        msg_type=_MSG_UNSUB_FROM_CHANNEL,
                        msg={
                            "conn_id": getattr(conn, "id", None),
                            "conn_type": conn.connection_type,
                            "channel_type": self.channel_type,
                        },
                        channel_id=self.id,
                    )
                )

    def broadcast(self, ctx: MessageContext) -> None:
        """Send to every subscriber not excluded by the context's broadcast flags."""
        flags = ctx.broadcast
        for conn in self.get_all_connections():
            if BroadcastType.ALL_BUT_SENDER.check(flags) and conn is ctx.connection:
                continue
            if BroadcastType.ALL_BUT_OWNER.check(flags) and conn is self.owner:
                continue
            if (
                BroadcastType.ALL_BUT_CLIENT.check(flags)
                and conn.connection_type == _CLIENT_CONNECTION
            ):
                continue
            if (
                BroadcastType.ALL_BUT_SERVER.check(flags)
                and conn.connection_type == _SERVER_CONNECTION
            ):
                continue
            conn.send(ctx)

    def get_all_connections(self) -> set:
        """A snapshot of the subscribed connections."""
        with self._lock:
            return set(self._subscriptions)

    def subscribe(self, conn: _ConnectionLike, options: Any = None) -> tuple[Any, bool]:
        """Subscribe a connection; returns its options and whether it already was."""
        with self._lock:
            if conn in self._subscriptions:
                return self._subscriptions[conn], True
            self._subscriptions[conn] = options
            return options, False

    def unsubscribe(self, conn: _ConnectionLike) -> Any:
        """Remove a subscription and return its options."""
        with self._lock:
            try:
                return self._subscriptions.pop(conn)
            except KeyError:
                raise KeyError(f"connection is not subscribed to {self}") from None

    def has_owner(self) -> bool:
        return self.owner is not None and not self.owner.is_closing()

    def is_same_owner(self, other: Channel) -> bool:
        return self.has_owner() and other.has_owner() and self.owner is other.owner

    def send_to_owner(self, msg_type: int, msg: Any) -> None:
        if not self.has_owner():
            self.logger.warning("channel has no owner to send message (msg_type=%s)", msg_type)
            return
        self.owner.send(MessageContext(msg_type=msg_type, msg=msg, channel_id=self.id))

    def check_acl(self, conn: Any, access_type: ChannelAccessType) -> bool:
        """Return True if ``conn`` may perform ``access_type``; raise AccessDenied otherwise."""
        level: int = ChannelAccessLevel.NONE
        settings = self._registry.settings.channel_settings.get(self.channel_type)
        if settings is not None:
            level = settings.acl_settings.level_for(access_type)

        try:
            level = ChannelAccessLevel(level)
        except ValueError:
            raise IllegalAccessLevelError() from None

        if level is ChannelAccessLevel.NONE:
            raise NoneAccessError()
        if level is ChannelAccessLevel.OWNER_ONLY:
            if self.owner is conn:
                return True
            raise OwnerOnlyAccessError()
        if level is ChannelAccessLevel.OWNER_AND_GLOBAL_OWNER:
            global_channel = self._registry.global_channel
            global_owner = global_channel.owner if global_channel is not None else None
            if self.owner is conn or global_owner is conn:
                return True
            raise OwnerAndGlobalOwnerAccessError()
        return True


class ChannelRegistry:
    """Allocates channel ids and keeps every live channel, starting with GLOBAL."""

    def __init__(self, settings: RegistrySettings | None = None) -> None:
        self.settings = settings if settings is not None else RegistrySettings()
        self._channels: dict[int, Channel] = {}
        self._lock = threading.RLock()
        self._next_channel_id = 0
        self._next_spatial_channel_id = self.settings.spatial_channel_id_start
        self._non_spatial_full = False
        self._spatial_full = False
        self.on_channel_created: list[Callable[[Channel], None]] = []
        self.on_channel_removing: list[Callable[[Channel], None]] = []
        self.on_channel_removed: list[Callable[[int], None]] = []
        self.on_global_unpossessed: list[Callable[[], None]] = []
        self.global_channel: Channel | None = None
        self.global_channel = self.create_channel(ChannelType.GLOBAL, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        with self._lock:
            return channel_id in self._channels

    def _next_free_id(self, index: int, lowest: int, highest: int) -> int | None:
        for _ in range(highest - lowest + 1):
            if index not in self._channels:
                return index
            index = index + 1 if index < highest else lowest
        return None

    def create_channel(self, channel_type: int, owner: _ConnectionLike | None) -> Channel:
        """Create and register a channel with the next free id of its range."""
        settings = self.settings
        with self._lock:
            if channel_type == ChannelType.GLOBAL and self.global_channel is not None:
                raise ValueError("failed to create GLOBAL channel as it already exists")

            if channel_type == ChannelType.SPATIAL:
                if self._spatial_full:
                    raise ChannelFullError("spatial channels are full")
                channel_id = self._next_free_id(
                    self._next_spatial_channel_id,
                    settings.spatial_channel_id_start,
                    settings.entity_channel_id_start - 1,
                )
                if channel_id is None:
                    self._spatial_full = True
                    raise ChannelFullError("spatial channels are full")
                self._next_spatial_channel_id = channel_id
            else:
                if self._non_spatial_full:
                    raise ChannelFullError("non-spatial channels are full")
                channel_id = self._next_free_id(
                    self._next_channel_id, 1, settings.spatial_channel_id_start - 1
                )
                if channel_id is None:
                    self._non_spatial_full = True
                    raise ChannelFullError("non-spatial channels are full")
                self._next_channel_id = channel_id

            channel = Channel(channel_id, channel_type, owner, self)
            self._channels[channel_id] = channel

        for listener in list(self.on_channel_created):
            listener(channel)
        return channel

    def remove_channel(self, channel: Channel) -> None:
        """Unregister a channel and make its id available again."""
        for listener in list(self.on_channel_removing):
            listener(channel)

        channel._removing = True
        channel._closed = True
        with self._lock:
            self._channels.pop(channel.id, None)
            if channel.channel_type == ChannelType.SPATIAL:
                self._spatial_full = False
                self._next_spatial_channel_id = channel.id
            elif channel.channel_type != ChannelType.ENTITY:
                self._non_spatial_full = False
                self._next_channel_id = channel.id

        for listener in list(self.on_channel_removed):
            listener(channel.id)

    def get_channel(self, channel_id: int) -> Channel | None:
        with self._lock:
            return self._channels.get(channel_id)

    def has_authority_over(self, conn: Any, channel: Channel) -> bool:
        """True if ``conn`` owns the channel or the GLOBAL channel."""
        if self.global_channel is not None and self.global_channel.owner is conn:
            return True
        return channel.owner is conn

    def _emit_global_unpossessed(self) -> None:
        for listener in list(self.on_global_unpossessed):
            listener()