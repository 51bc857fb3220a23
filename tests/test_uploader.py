import asyncio
from datetime import datetime, timezone
from pathlib import Path

import orjson

from chatlog.core import uploader as uploader_mod
from chatlog.core.message import ChatEvent
from chatlog.core.recorder import Recorder
from chatlog.core.store import LocalObjectStore, ObjectStore, StoreServerError
from chatlog.core.uploader import Uploader

NAME = "twitch_ludwig_20251230_1030.jsonl"
KEY = "2025/12/30/twitch/ludwig/" + NAME


class FlakyStore(ObjectStore):
    """fail 回だけ失敗してから成功する保存先"""

    def __init__(self, fail: int) -> None:
        self.fail = fail
        self.calls = []
        self.objects = {}

    async def put_object(self, key: str, body: bytes) -> None:
        self.calls.append(key)
        if len(self.calls) <= self.fail:
            raise StoreServerError("503 from store")
        self.objects[key] = body


class SleepRecorder:
    def __init__(self, stop_after: int | None = None) -> None:
        self.delays = []
        self.stop_after = stop_after

    async def __call__(self, delay: float, stop: asyncio.Event) -> bool:
        self.delays.append(delay)
        if self.stop_after is not None and len(self.delays) >= self.stop_after:
            stop.set()
            return True
        return False


def _segment(tmp_path: Path, name: str = NAME) -> Path:
    p = tmp_path / name
    p.write_bytes(b'{"message":"hi"}\n')
    return p


def test_retries_with_exponential_backoff_then_deletes(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=2)
    sleep = SleepRecorder()
    up = Uploader(store, max_retries=3, backoff_base_sec=1.0, sleep=sleep)

    ok = asyncio.run(up.upload_with_retry(p))

    assert ok is True
    assert store.calls == [KEY, KEY, KEY]
    assert sleep.delays == [1.0, 2.0]
    assert store.objects[KEY] == b'{"message":"hi"}\n'
    assert not p.exists()


def test_exhausted_retries_keep_file(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=10)
    sleep = SleepRecorder()
    up = Uploader(store, max_retries=2, sleep=sleep)

    assert asyncio.run(up.upload_with_retry(p)) is False
    assert len(store.calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert p.exists()


def test_bad_name_is_never_attempted(tmp_path):
    p = _segment(tmp_path, "garbage.jsonl")
    store = FlakyStore(fail=0)
    up = Uploader(store, sleep=SleepRecorder())

    assert asyncio.run(up.upload_with_retry(p)) is False
    assert store.calls == []
    assert p.exists()


def test_delete_disabled_keeps_file(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=0)
    up = Uploader(store, delete_after_upload=False, sleep=SleepRecorder())

    assert asyncio.run(up.upload_with_retry(p)) is True
    assert p.exists()


def test_stop_abandons_retry_loop(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=10)
    sleep = SleepRecorder(stop_after=1)
    up = Uploader(store, max_retries=5, sleep=sleep)

    assert asyncio.run(up.upload_with_retry(p)) is False
    assert len(store.calls) == 1
    assert p.exists()


def test_missing_file_is_not_an_error(tmp_path):
    store = FlakyStore(fail=0)
    up = Uploader(store, sleep=SleepRecorder())

    assert asyncio.run(up.upload_with_retry(tmp_path / NAME)) is False
    assert store.calls == []


def test_rescan_uploads_leftovers_to_local_store(tmp_path):
    out = tmp_path / "data"
    out.mkdir()
    a = _segment(out)
    b = _segment(out, "kick_some_long_name_20251231_2359.jsonl")
    active = _segment(out, "kick_xqc_20251231_2359.jsonl")
    remote = tmp_path / "remote"

    async def scenario():
        up = Uploader(LocalObjectStore(remote))
        n = await up.rescan_and_enqueue(out, exclude=[active])
        assert await up.wait_idle(timeout=5.0) is True
        return n

    assert asyncio.run(scenario()) == 2
    assert (remote / KEY).exists()
    assert (remote / "2025/12/31/kick/some_long_name/kick_some_long_name_20251231_2359.jsonl").exists()
    assert not a.exists() and not b.exists()
    assert active.exists()


def test_submit_dedups_inflight_path(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=0)

    async def scenario():
        up = Uploader(store, sleep=SleepRecorder())
        first = up.submit(p)
        second = up.submit(p)
        await up.wait_idle()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not None and second is None
    assert store.calls == [KEY]


def test_wait_idle_abandons_stragglers(tmp_path):
    p = _segment(tmp_path)

    class HangingStore(ObjectStore):
        async def put_object(self, key, body):
            await asyncio.sleep(60)

    async def scenario():
        up = Uploader(HangingStore())
        up.submit(p)
        done = await up.wait_idle(timeout=0.05)
        return done, up.pending

    done, pending = asyncio.run(scenario())
    assert done is False
    assert pending == 0
    assert p.exists()


def test_run_consumes_queue_until_stop(tmp_path):
    p = _segment(tmp_path)
    store = FlakyStore(fail=0)

    async def scenario():
        stop = asyncio.Event()
        q: asyncio.Queue = asyncio.Queue(maxsize=4)
        up = Uploader(store, stop=stop, sleep=SleepRecorder())
        runner = asyncio.create_task(up.run(q))
        await q.put(p)
        for _ in range(50):
            if store.calls:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await runner
        await up.wait_idle(timeout=1.0)

    asyncio.run(scenario())
    assert store.calls == [KEY]
    assert not p.exists()


def test_periodic_rescan_skips_active_segments(tmp_path):
    out = tmp_path / "data"
    out.mkdir()
    done = _segment(out)
    active = _segment(out, "twitch_ludwig_20251230_1031.jsonl")
    store = FlakyStore(fail=0)

    async def active_paths():
        return [active]

    async def scenario():
        stop = asyncio.Event()
        q: asyncio.Queue = asyncio.Queue()
        up = Uploader(store, stop=stop, sleep=SleepRecorder())
        runner = asyncio.create_task(up.run(q, rescan_dir=out, rescan_interval_sec=0.01, active=active_paths))
        for _ in range(100):
            if store.calls:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await runner
        await up.wait_idle(timeout=1.0)

    asyncio.run(scenario())
    assert store.calls == [KEY]
    assert not done.exists()
    assert active.exists()


def test_rescan_skips_writer_opened_while_listing(tmp_path, monkeypatch):
    out = tmp_path / "data"
    remote = tmp_path / "remote"
    real_list = uploader_mod.list_segments

    def chat(text: str) -> ChatEvent:
        return ChatEvent(
            source="twitch", timestamp=datetime.now(timezone.utc), stream_key="xqc", actor="v", actor_id="1", text=text
        )

    async def scenario():
        loop = asyncio.get_running_loop()
        rec = Recorder(out, asyncio.Queue(maxsize=10))
        rec.prepare()

        def listing_while_recorder_opens(directory, ext, exclude):
            # 一覧を取っている間に録画側が新しいキーのセグメントを開く
            asyncio.run_coroutine_threadsafe(rec.record_event(chat("x0")), loop).result(timeout=5)
            return real_list(directory, ext, exclude)

        monkeypatch.setattr(uploader_mod, "list_segments", listing_while_recorder_opens)
        up = Uploader(LocalObjectStore(remote))
        scheduled = await up.rescan_and_enqueue(out, active=rec.active_paths)
        await up.wait_idle(timeout=5.0)
        for t in ("x1", "x2", "x3"):
            await rec.record_event(chat(t))
        return scheduled, await rec.shutdown()

    scheduled, closed = asyncio.run(scenario())

    assert scheduled == 0
    assert not remote.exists()
    assert [orjson.loads(line)["message"] for line in closed[0].read_bytes().splitlines()] == ["x0", "x1", "x2", "x3"]
