import pytest

from chanrelay.merge import (
    ChatChannelData,
    ChatMessage,
    KvEntry,
    MergeOptions,
    SpatialInfo,
    TankGameChannelData,
    TankState,
    TestMergeMessage,
    TransformState,
    Vector3,
    merge_chat_capped,
    merge_chat_with_time_span,
    merge_tank_game_data,
    merge_test_message,
)

BASE_MS = 1_700_000_000_000
STEP_MS = 101


def _messages(count, send_time_ms, content):
    return [
        ChatMessage(sender="c0", send_time=send_time_ms, content=f"{content}-{i + 1}")
        for i in range(count)
    ]


def _run_steps(steps, time_span_limit):
    dst = ChatChannelData()
    options = MergeOptions(list_size_limit=100, truncate_top=True)
    results = []
    for index, count in enumerate(steps):
        now_ms = BASE_MS + index * STEP_MS
        src = ChatChannelData(_messages(count, now_ms, f"s{index + 1}"))
        merge_chat_with_time_span(dst, src, options, time_span_limit, now_ms / 1000)
        results.append((len(dst.chat_messages), dst.chat_messages[0].content))
    return results


def test_merge_without_time_span_limit():
    results = _run_steps([100, 10, 200], 0)
    assert [length for length, _ in results] == [100, 100, 100]
    assert results[2][1] == "s3-101"


def test_merge_by_long_time_span_limit():
    results = _run_steps([100, 10, 200], 3600)
    assert [length for length, _ in results] == [100, 110, 310]
    assert results[2][1] == "s1-1"


def test_time_span_merge_truncates_bottom():
    dst = ChatChannelData(_messages(3, BASE_MS, "a"))
    src = ChatChannelData(_messages(2, BASE_MS, "b"))
    merge_chat_with_time_span(
        dst, src, MergeOptions(list_size_limit=4), 3600, BASE_MS / 1000
    )
    assert [m.content for m in dst.chat_messages] == ["a-1", "a-2", "a-3", "b-1"]


def test_time_span_merge_rejects_wrong_type():
    with pytest.raises(TypeError, match="ChatChannelData"):
        merge_chat_with_time_span(ChatChannelData(), TestMergeMessage(), MergeOptions())


def test_capped_merge_appends_and_truncates_top():
    dst = ChatChannelData(_messages(3, BASE_MS, "a"))
    src = ChatChannelData(_messages(3, BASE_MS, "b"))
    merge_chat_capped(dst, src, MergeOptions(list_size_limit=4, truncate_top=True))
    assert [m.content for m in dst.chat_messages] == ["a-3", "b-1", "b-2", "b-3"]


def test_capped_merge_truncates_bottom():
    dst = ChatChannelData(_messages(3, BASE_MS, "a"))
    src = ChatChannelData(_messages(3, BASE_MS, "b"))
    merge_chat_capped(dst, src, MergeOptions(list_size_limit=2))
    assert [m.content for m in dst.chat_messages] == ["a-1", "a-2"]


def test_capped_merge_replaces_list_with_copy():
    dst = ChatChannelData(_messages(3, BASE_MS, "a"))
    src = ChatChannelData(_messages(2, BASE_MS, "b"))
    merge_chat_capped(dst, src, MergeOptions(should_replace_list=True))
    assert [m.content for m in dst.chat_messages] == ["b-1", "b-2"]
    assert dst.chat_messages is not src.chat_messages
    src.chat_messages.clear()
    assert len(dst.chat_messages) == 2


def test_capped_merge_rejects_wrong_type():
    with pytest.raises(TypeError, match="ChatChannelData"):
        merge_chat_capped(ChatChannelData(), TankGameChannelData(), MergeOptions())


def test_test_message_merge_list_and_kv():
    dst = TestMergeMessage(entries=["a", "b"], kv={1: KvEntry("x"), 2: KvEntry("y")})
    src = TestMergeMessage(
        entries=["c"], kv={1: KvEntry(removed=True), 3: KvEntry("z")}
    )
    merge_test_message(dst, src, MergeOptions())
    assert dst.entries == ["a", "b", "c"]
    assert dst.kv == {2: KvEntry("y"), 3: KvEntry("z")}


def test_test_message_merge_limits():
    dst = TestMergeMessage(entries=["a", "b", "c"])
    src = TestMergeMessage(entries=["d", "e"])
    merge_test_message(dst, src, MergeOptions(list_size_limit=3, truncate_top=True))
    assert dst.entries == ["c", "d", "e"]

    merge_test_message(dst, TestMergeMessage(entries=["f"]), MergeOptions(list_size_limit=2))
    assert dst.entries == ["c", "d"]


def test_test_message_merge_replace():
    dst = TestMergeMessage(entries=["a", "b"])
    merge_test_message(dst, TestMergeMessage(entries=["z"]), MergeOptions(should_replace_list=True))
    assert dst.entries == ["z"]


def test_test_message_merge_rejects_wrong_type():
    with pytest.raises(TypeError, match="TestMergeMessage"):
        merge_test_message(TestMergeMessage(), ChatChannelData(), MergeOptions())


class _RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, old_info, new_info, provider):
        self.calls.append((old_info, new_info, provider))


def test_tank_merge_updates_health_and_removes():
    dst = TankGameChannelData(tank_states={1: TankState(health=10), 2: TankState(health=5)})
    src = TankGameChannelData(
        tank_states={1: TankState(health=7), 2: TankState(removed=True), 3: TankState(health=9)}
    )
    merge_tank_game_data(dst, src, None)
    assert dst.tank_states == {1: TankState(health=7), 3: TankState(health=9)}


def test_tank_merge_transforms_without_notifier():
    dst = TankGameChannelData(
        transform_states={
            1: TransformState(position=Vector3(1, 0, 1), rotation=Vector3(0, 1, 0)),
            2: TransformState(position=Vector3()),
        }
    )
    new_rotation = Vector3(0, 2, 0)
    src = TankGameChannelData(
        transform_states={
            1: TransformState(rotation=new_rotation),
            2: TransformState(removed=True),
            4: TransformState(scale=Vector3(1, 1, 1)),
        }
    )
    merge_tank_game_data(dst, src, None)
    assert set(dst.transform_states) == {1, 4}
    assert dst.transform_states[1].rotation is new_rotation
    assert dst.transform_states[1].position == Vector3(1, 0, 1)
    assert dst.transform_states[4].scale == Vector3(1, 1, 1)


def test_tank_merge_notifies_horizontal_move():
    notifier = _RecordingNotifier()
    existing = TransformState(position=Vector3(1, 0, 2))
    dst = TankGameChannelData(
        tank_states={5: TankState(health=3)}, transform_states={5: existing}
    )
    new_position = Vector3(4, 0, 6)
    src = TankGameChannelData(transform_states={5: TransformState(position=new_position)})
    merge_tank_game_data(dst, src, notifier)

    assert len(notifier.calls) == 1
    old_info, new_info, provider = notifier.calls[0]
    assert old_info == SpatialInfo(x=1, z=2)
    assert new_info == SpatialInfo(x=4, z=6)
    assert existing.position is new_position

    handover = provider(1, 2)
    assert handover.transform_states == {5: existing}
    assert handover.tank_states == {5: TankState(health=3)}


def test_tank_merge_ignores_vertical_move():
    notifier = _RecordingNotifier()
    dst = TankGameChannelData(transform_states={5: TransformState(position=Vector3(1, 0, 2))})
    src = TankGameChannelData(transform_states={5: TransformState(position=Vector3(1, 9, 2))})
    merge_tank_game_data(dst, src, notifier)
    assert notifier.calls == []
    assert dst.transform_states[5].position == Vector3(1, 9, 2)


def test_tank_merge_rejects_wrong_type():
    with pytest.raises(TypeError, match="TankGameChannelData"):
        merge_tank_game_data(TankGameChannelData(), ChatChannelData(), None)