"""Merge rules for the chat, test and tank game channel data types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

DEFAULT_TIME_SPAN_LIMIT = 10.0
"""Seconds of chat history kept beyond the list size limit by default."""


@dataclass
class MergeOptions:
    """How list fields are combined when channel data is merged."""

    should_replace_list: bool = False
    list_size_limit: int = 0
    truncate_top: bool = False


@dataclass
class ChatMessage:
    """A chat line; send_time is in milliseconds since the epoch."""

    sender: str = ""
    send_time: int = 0
    content: str = ""


@dataclass
class ChatChannelData:
    chat_messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class KvEntry:
    value: str = ""
    removed: bool = False


@dataclass
class TestMergeMessage:
    """Channel data with a list field and a keyed map field."""

    __test__ = False

    entries: list[str] = field(default_factory=list)
    kv: dict[int, KvEntry] = field(default_factory=dict)


@dataclass
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass
class TransformState:
    position: Vector3 | None = None
    rotation: Vector3 | None = None
    scale: Vector3 | None = None
    removed: bool = False


@dataclass
class TankState:
    health: int = 0
    removed: bool = False


@dataclass
class TankGameChannelData:
    tank_states: dict[int, TankState] = field(default_factory=dict)
    transform_states: dict[int, TransformState] = field(default_factory=dict)


@dataclass(frozen=True)
class SpatialInfo:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


HandoverProvider = Callable[[int, int], TankGameChannelData]


class _SpatialNotifier(Protocol):
    def notify(
        self, old_info: SpatialInfo, new_info: SpatialInfo, provider: HandoverProvider
    ) -> None: ...


def _require(src: object, expected: type) -> None:
    if not isinstance(src, expected):
        raise TypeError(f"src is not a {expected.__name__}")


def _combined(dst_items: list, src_items: list, options: MergeOptions) -> list:
    if options.should_replace_list:
        return list(src_items)
    return [*dst_items, *src_items]


def _truncated(items: list, options: MergeOptions) -> list:
    limit = options.list_size_limit
    if limit <= 0:
        return items
    if options.truncate_top:
        return items[max(len(items) - limit, 0):]
    return items[:limit]


def merge_chat_capped(
    dst: ChatChannelData, src: ChatChannelData, options: MergeOptions
) -> None:
    """Append (or replace) chat messages, then cap the list at the size limit."""
    _require(src, ChatChannelData)
    messages = _combined(dst.chat_messages, src.chat_messages, options)
    dst.chat_messages = _truncated(messages, options)


def merge_chat_with_time_span(
    dst: ChatChannelData,
    src: ChatChannelData,
    options: MergeOptions,
    time_span_limit: float = DEFAULT_TIME_SPAN_LIMIT,
    now: float | None = None,
) -> None:
    """Merge chat messages, keeping over-limit messages sent within the time span.

    ``time_span_limit`` is in seconds (0 disables it) and ``now`` is epoch
    seconds, defaulting to the current time.
    """
    _require(src, ChatChannelData)
    messages = _combined(dst.chat_messages, src.chat_messages, options)

    limit = options.list_size_limit
    count = len(messages)
    if limit > 0 and count > limit:
        if options.truncate_top:
            start = count - limit
            if time_span_limit > 0:
                current = time.time() if now is None else now
                available_ms = (current - time_span_limit) * 1000.0
                while start > 0 and messages[start - 1].send_time >= available_ms:
                    start -= 1
            messages = messages[start:]
        else:
            messages = messages[:limit]

    dst.chat_messages = messages


def merge_test_message(
    dst: TestMergeMessage, src: TestMergeMessage, options: MergeOptions
) -> None:
    """Merge the list field by the options and the map field entry by entry."""
    _require(src, TestMergeMessage)
    entries = _combined(dst.entries, src.entries, options)
    dst.entries = _truncated(entries, options)

    for key, entry in src.kv.items():
        if entry.removed:
            dst.kv.pop(key, None)
        else:
            dst.kv[key] = entry


def _handover_provider(
    dst: TankGameChannelData, net_id: int, transform: TransformState
) -> HandoverProvider:
    def provide(src_channel_id: int, dst_channel_id: int) -> TankGameChannelData:
        data = TankGameChannelData(transform_states={net_id: transform})
        tank = dst.tank_states.get(net_id)
        if tank is not None:
            data.tank_states[net_id] = tank
        return data

    return provide


def merge_tank_game_data(
    dst: TankGameChannelData,
    src: TankGameChannelData,
    notifier: _SpatialNotifier | None = None,
) -> None:
    """Merge tank and transform states, notifying of horizontal position changes."""
    _require(src, TankGameChannelData)

    for net_id, tank in src.tank_states.items():
        if tank.removed:
            dst.tank_states.pop(net_id, None)
        elif net_id in dst.tank_states:
            dst.tank_states[net_id].health = tank.health
        else:
            dst.tank_states[net_id] = tank

    for net_id, update in src.transform_states.items():
        if update.removed:
            dst.transform_states.pop(net_id, None)
            continue

        current = dst.transform_states.get(net_id)
        if current is None:
            dst.transform_states[net_id] = update
            continue

        if update.position is not None:
            old_pos = current.position
            new_pos = update.position
            if (
                old_pos is not None
                and notifier is not None
                and (old_pos.x != new_pos.x or old_pos.z != new_pos.z)
            ):
                notifier.notify(
                    SpatialInfo(x=old_pos.x, z=old_pos.z),
                    SpatialInfo(x=new_pos.x, z=new_pos.z),
                    _handover_provider(dst, net_id, current),
                )
            current.position = new_pos
        if update.rotation is not None:
            current.rotation = update.rotation
        if update.scale is not None:
            current.scale = update.scale