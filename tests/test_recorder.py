import asyncio
from datetime import datetime, timedelta, timezone

import orjson
from loguru import logger

from chatlog.core.message import ChatEvent
from chatlog.core.recorder import Recorder
from chatlog.core.segments import list_segments
from chatlog.core.store import LocalObjectStore
from chatlog.core.uploader import Uploader

T0 = datetime(2025, 12, 30, 10, 30, 15, tzinfo=timezone.utc)


class FakeClock:
    """単調時計とUTC時計を同時に進めるテスト用時計"""

    def __init__(self) -> None:
        self.mono = 1000.0
        self.wall = T0

    def monotonic(self) -> float:
        return self.mono

    def utcnow(self) -> datetime:
        return self.wall

    def advance(self, sec: float) -> None:
        self.mono += sec
        self.wall += timedelta(seconds=sec)


def _ev(text: str, key: str = "ludwig", source: str = "twitch") -> ChatEvent:
    return ChatEvent(source=source, timestamp=T0, stream_key=key, actor="v", actor_id="1", text=text)


def _recorder(tmp_path, clock: FakeClock, q=None, **kw) -> Recorder:
    q = q if q is not None else asyncio.Queue(maxsize=100)
    return Recorder(tmp_path, q, clock=clock.monotonic, wallclock=clock.utcnow, **kw)


def _texts(path) -> list:
    return [orjson.loads(line)["message"] for line in path.read_bytes().splitlines()]


def test_time_rotation_keeps_order_across_segments(tmp_path):
    clock = FakeClock()

    async def scenario():
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        rec = _recorder(tmp_path, clock, q, buffer_size=2, rotate_interval_sec=60)
        rec.prepare()
        for i in range(3):
            await rec.record_event(_ev(f"m{i}"))
        clock.advance(61)
        rotated = await rec.check_rotation()
        for i in range(3, 5):
            await rec.record_event(_ev(f"m{i}"))
        closed = await rec.shutdown()
        handed = []
        while not q.empty():
            handed.append(q.get_nowait())
        return rotated, closed, handed

    rotated, closed, handed = asyncio.run(scenario())

    assert rotated == ["twitch_ludwig_20251230_1030.jsonl"]
    first = tmp_path / "twitch_ludwig_20251230_1030.jsonl"
    second = tmp_path / "twitch_ludwig_20251230_1031.jsonl"
    assert handed == [first, second]
    assert closed == [second]
    assert _texts(first) + _texts(second) == ["m0", "m1", "m2", "m3", "m4"]


def test_size_rotation_after_flush(tmp_path):
    clock = FakeClock()

    async def scenario():
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        rec = _recorder(tmp_path, clock, q, buffer_size=1, rotate_size_bytes=10)
        rec.prepare()
        await rec.record_event(_ev("big enough to pass ten bytes"))
        active = await rec.active_paths()
        return q.get_nowait(), active

    handed, active = asyncio.run(scenario())

    assert handed == tmp_path / "twitch_ludwig_20251230_1030.jsonl"
    assert _texts(handed) == ["big enough to pass ten bytes"]
    # 同じ分の名前は使用済みなので次の分になる
    assert active == [tmp_path / "twitch_ludwig_20251230_1031.jsonl"]


def test_keys_get_separate_segments(tmp_path):
    clock = FakeClock()

    async def scenario():
        rec = _recorder(tmp_path, clock)
        rec.prepare()
        await rec.record_event(_ev("a", key="ludwig"))
        await rec.record_event(_ev("b", key="xqc", source="kick"))
        await rec.record_event(_ev("c", key="some_long_name"))
        await rec.shutdown()

    asyncio.run(scenario())

    names = sorted(p.name for p in list_segments(tmp_path))
    assert names == [
        "kick_xqc_20251230_1030.jsonl",
        "twitch_ludwig_20251230_1030.jsonl",
        "twitch_some_long_name_20251230_1030.jsonl",
    ]


def test_existing_file_is_never_truncated(tmp_path):
    clock = FakeClock()
    old = tmp_path / "twitch_ludwig_20251230_1030.jsonl"
    old.write_bytes(b'{"message":"from last run"}\n')

    async def scenario():
        rec = _recorder(tmp_path, clock)
        rec.prepare()
        await rec.record_event(_ev("new"))
        return await rec.shutdown()

    closed = asyncio.run(scenario())

    assert old.read_bytes() == b'{"message":"from last run"}\n'
    assert closed == [tmp_path / "twitch_ludwig_20251230_1031.jsonl"]


def test_invalid_and_unencodable_events_are_dropped(tmp_path):
    clock = FakeClock()

    async def scenario():
        rec = _recorder(tmp_path, clock)
        rec.prepare()
        bad = await rec.record_event(_ev("x", source="tw_itch"))
        await rec.record_event(_ev("ok1"))
        await rec.record_event(_ev("bad \ud800 surrogate"))
        await rec.record_event(_ev("ok2"))
        await rec.shutdown()
        return bad

    assert asyncio.run(scenario()) is False
    assert _texts(tmp_path / "twitch_ludwig_20251230_1030.jsonl") == ["ok1", "ok2"]


def test_full_delivery_queue_does_not_block_and_rescan_recovers(tmp_path):
    clock = FakeClock()
    out = tmp_path / "data"
    remote = tmp_path / "remote"

    async def scenario():
        q: asyncio.Queue = asyncio.Queue(maxsize=1)
        q.put_nowait(out / "placeholder")
        rec = _recorder(out, clock, q, rotate_interval_sec=60)
        rec.prepare()
        await rec.record_event(_ev("kept"))
        clock.advance(61)
        await asyncio.wait_for(rec.check_rotation(), timeout=1.0)
        await asyncio.wait_for(rec.shutdown(), timeout=1.0)
        assert q.qsize() == 1

        up = Uploader(LocalObjectStore(remote))
        n = await up.rescan_and_enqueue(out)
        await up.wait_idle(timeout=5.0)
        return n

    assert asyncio.run(scenario()) == 2
    uploaded = remote / "2025/12/30/twitch/ludwig/twitch_ludwig_20251230_1030.jsonl"
    assert _texts(uploaded) == ["kept"]
    assert list_segments(out) == []


def test_run_drains_queue_and_flushes_on_stop(tmp_path):
    clock = FakeClock()

    async def scenario():
        events: asyncio.Queue = asyncio.Queue()
        delivery: asyncio.Queue = asyncio.Queue(maxsize=10)
        stop = asyncio.Event()
        rec = _recorder(tmp_path, clock, delivery, buffer_size=100)
        for i in range(5):
            events.put_nowait(_ev(f"m{i}"))
        stop.set()
        await rec.run(events, stop)
        return delivery.get_nowait()

    path = asyncio.run(scenario())

    assert _texts(path) == ["m0", "m1", "m2", "m3", "m4"]


def test_time_rotation_triggers_exactly_at_interval(tmp_path):
    clock = FakeClock()

    async def scenario():
        rec = _recorder(tmp_path, clock, rotate_interval_sec=60)
        rec.prepare()
        await rec.record_event(_ev("a"))
        clock.advance(59)
        early = await rec.check_rotation()
        clock.advance(1)
        at_limit = await rec.check_rotation()
        return early, at_limit

    early, at_limit = asyncio.run(scenario())

    assert early == []
    assert at_limit == ["twitch_ludwig_20251230_1030.jsonl"]


def test_size_rotation_triggers_exactly_at_limit(tmp_path):
    clock = FakeClock()
    line = len(_ev("a").to_line())

    async def scenario():
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        rec = _recorder(tmp_path, clock, q, buffer_size=2, rotate_size_bytes=2 * line)
        rec.prepare()
        await rec.record_event(_ev("a"))
        await rec.record_event(_ev("b"))  # フラッシュ直後に bytes_written == 上限
        return q.get_nowait()

    handed = asyncio.run(scenario())

    assert _texts(handed) == ["a", "b"]


def test_check_rotation_size_limit_is_inclusive(tmp_path):
    clock = FakeClock()
    line = len(_ev("a").to_line())

    async def scenario():
        rec = _recorder(tmp_path, clock, buffer_size=1, rotate_size_bytes=line + 1)
        rec.prepare()
        await rec.record_event(_ev("a"))
        below = await rec.check_rotation()
        # 上限を下げて bytes_written と等しくする
        rec.rotate_size_bytes = line
        at_limit = await rec.check_rotation()
        return below, at_limit

    below, at_limit = asyncio.run(scenario())

    assert below == []
    assert at_limit == ["twitch_ludwig_20251230_1030.jsonl"]


def test_issued_names_do_not_accumulate(tmp_path):
    clock = FakeClock()

    async def scenario():
        rec = _recorder(tmp_path, clock, rotate_interval_sec=60)
        rec.prepare()
        for i in range(5):
            await rec.record_event(_ev(f"m{i}"))
            clock.advance(61)
            await rec.check_rotation()
        return dict(rec._issued)

    issued = asyncio.run(scenario())

    assert list(issued) == ["twitch_ludwig_20251230_1035.jsonl"]


def test_rapid_size_rotation_warns_when_names_run_ahead(tmp_path):
    clock = FakeClock()
    warnings = []
    sink = logger.add(lambda m: warnings.append(m.record["message"]), level="WARNING")

    async def scenario():
        rec = _recorder(tmp_path, clock, buffer_size=1, rotate_size_bytes=1)
        rec.prepare()
        for i in range(8):
            await rec.record_event(_ev(f"m{i}"))
        return await rec.active_paths()

    try:
        active = asyncio.run(scenario())
    finally:
        logger.remove(sink)

    assert active == [tmp_path / "twitch_ludwig_20251230_1038.jsonl"]
    assert any("runs ahead of wall clock" in w for w in warnings)
