# chatlog/core/recorder.py
# 役割：チャットの Event を (source, stream_key) ごとの NDJSON セグメントに書き出す“録画係”
# - 【関数】record_event：ライターを引く/作る→バッファに積む→閾値で同期フラッシュ
# - 【関数】check_rotation：経過時間 OR サイズ のどちらか先に達したらローテーション
# - 【関数】shutdown：全ライターをフラッシュ＆クローズし、完了セグメントを配送キューへ渡す
# ライター表は 1つの asyncio.Lock（排他ドメイン）の内側でだけ触る。表そのものは外に出さない。
from __future__ import annotations

import asyncio  # 排他・タイマー・キャンセル
import contextlib
import time  # 経過時間は単調時計で測る
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import orjson
from loguru import logger

from chatlog.core.message import ChatEvent, validate_event
from chatlog.core.realtime import STOPPED, get_or_stop
from chatlog.core.segments import SEGMENT_EXT, segment_filename

_MB = 1024 * 1024
_MAX_NAME_DRIFT = timedelta(minutes=5)  # これ以上先の刻印になったら警告


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SegmentWriter:
    """【関数】1ファイル＝1ライター：append→flush→close の最小実装"""

    def __init__(
        self,
        path: Path,
        source: str,
        stream_key: str,
        created_at: float,
        opened_at: datetime,
    ) -> None:
        self.path = path
        self.filename = path.name
        self.source = source
        self.stream_key = stream_key
        self.created_at = created_at  # 単調時計（秒）
        self.opened_at = opened_at  # ファイル名に載せた UTC 時刻
        self.bytes_written = 0
        self.pending: List[ChatEvent] = []
        # 既存ファイルは絶対に切り詰めない（"x" = 新規作成のみ）
        self._fh = path.open("xb")

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def append(self, ev: ChatEvent) -> int:
        self.pending.append(ev)
        return len(self.pending)

    def flush(self) -> int:
        """【関数】バッファを1件=1行で書き出してディスクへ流す。書けた件数を返す"""
        written = 0
        for ev in self.pending:
            try:
                line = ev.to_line()
            except (orjson.JSONEncodeError, TypeError, ValueError) as e:
                # 直列化できない1件だけを捨てる
                logger.error(f"event dropped (encode): file={self.filename} err={e}")
                continue
            try:
                self.bytes_written += self._fh.write(line)
            except OSError as e:
                logger.error(f"event dropped (write): file={self.filename} err={e}")
                continue
            written += 1
        self.pending.clear()
        try:
            self._fh.flush()
        except OSError as e:
            logger.error(f"segment flush failed: file={self.filename} err={e}")
        return written

    def close(self) -> None:
        """【関数】安全クローズ（最後にflush）"""
        try:
            self.flush()
        finally:
            try:
                self._fh.close()
            except OSError as e:
                logger.error(f"segment close failed: file={self.filename} err={e}")


class Recorder:
    """
    【関数】録画器：Event の流れを閉じた不変セグメントの列に変える。
    - 1キーにつき生きているライターは常に1つ
    - ローテーション直後に同じキーの新ライターを作るので、流れてくる Event を拒まない
    - 配送キューが満杯なら待たずに捨てる（ファイルはディスクに残り、起動時リスキャンで拾われる）
    """

    def __init__(
        self,
        output_dir: str | Path,
        delivery: asyncio.Queue,
        *,
        buffer_size: int = 100,
        rotate_interval_sec: float = 60 * 60,
        rotate_size_bytes: int = 100 * _MB,
        check_interval_sec: float = 60.0,
        ext: str = SEGMENT_EXT,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.delivery = delivery
        self.buffer_size = max(1, int(buffer_size))
        self.rotate_interval_sec = float(rotate_interval_sec)
        self.rotate_size_bytes = int(rotate_size_bytes)
        self.check_interval_sec = float(check_interval_sec)
        self.ext = ext
        self._clock = clock
        self._wallclock = wallclock
        self._writers: Dict[Tuple[str, str], SegmentWriter] = {}
        self._issued: Dict[str, datetime] = {}  # このプロセスで払い出したファイル名 → 刻印した分
        self._lock = asyncio.Lock()

    # ---- 準備 ----
    def prepare(self) -> None:
        """出力ディレクトリを用意する（失敗は上位で致命扱い）"""
        self.output_dir.mkdir(parents=True, exist_ok=True)

    # ---- 公開操作（すべて排他ドメインの内側） ----
    async def record_event(self, ev: ChatEvent) -> bool:
        """【関数】1件を積む。捨てた場合は False（呼び出し側には例外を投げない）"""
        problem = validate_event(ev)
        if problem is not None:
            logger.error(f"event dropped (invalid): {problem}")
            return False

        async with self._lock:
            fw = self._writers.get(ev.key)
            if fw is None:
                try:
                    fw = self._open_writer(ev.source, ev.stream_key)
                except OSError as e:
                    logger.error(f"event dropped (open segment): source={ev.source} key={ev.stream_key} err={e}")
                    return False
                self._writers[ev.key] = fw

            if fw.append(ev) >= self.buffer_size:
                fw.flush()
                # サイズ上限はフラッシュ直後にも見る（超過はバッファ1回分まで）
                if fw.bytes_written >= self.rotate_size_bytes:
                    self._rotate(ev.key, fw, reason="size limit")
        return True

    async def check_rotation(self) -> List[str]:
        """【関数】全ライターを見て、時間 OR サイズの上限に達したものをローテーションする"""
        rotated: List[str] = []
        async with self._lock:
            now = self._clock()
            for key, fw in list(self._writers.items()):
                reason = None
                if now - fw.created_at >= self.rotate_interval_sec:
                    reason = "time limit"
                elif fw.bytes_written >= self.rotate_size_bytes:
                    reason = "size limit"
                if reason is not None:
                    rotated.append(fw.filename)
                    self._rotate(key, fw, reason=reason)
        return rotated

    async def shutdown(self) -> List[Path]:
        """【関数】全ライターをフラッシュ＆クローズし、完了セグメントを配送キューへ渡す"""
        closed: List[Path] = []
        async with self._lock:
            for key, fw in list(self._writers.items()):
                self._finish(fw, final=True)
                closed.append(fw.path)
                del self._writers[key]
        logger.info(f"all segments flushed and closed: count={len(closed)}")
        return closed

    async def active_paths(self) -> List[Path]:
        """何をするか：書き込み中のファイル一覧（リスキャンで除外するため）"""
        async with self._lock:
            return [fw.path for fw in self._writers.values()]

    # ---- 実行ループ ----
    async def run(self, events: asyncio.Queue, stop: asyncio.Event) -> None:
        """
        【関数】Event 待ち・停止合図のどちらか早い方で起きる。ローテーションは別タイマータスク。
        停止時はキューに残った Event も積んでから shutdown する。
        """
        self.prepare()
        ticker = asyncio.create_task(self._rotation_loop(stop), name="recorder-rotation")
        stop_wait = asyncio.create_task(stop.wait(), name="recorder-stop")
        count = 0
        logger.info(f"recorder start: dir={self.output_dir}")
        try:
            while not stop.is_set():
                ev = await get_or_stop(events, stop_wait)
                if ev is STOPPED:
                    break
                if await self.record_event(ev):
                    count += 1

            # 停止時点でキューに残っている分も落とさない
            while True:
                try:
                    ev = events.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if await self.record_event(ev):
                    count += 1
        finally:
            for t in (ticker, stop_wait):
                t.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await t
            logger.info("recorder shutting down, flushing buffers...")
            await self.shutdown()
            logger.info(f"recorder end: events={count}")

    async def _rotation_loop(self, stop: asyncio.Event) -> None:
        """Event の到着とは無関係に、一定周期でローテーション判定を回す"""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.check_interval_sec)
            except asyncio.TimeoutError:
                await self.check_rotation()

    # ---- 内部（ロック保持中にだけ呼ぶ） ----
    def _open_writer(self, source: str, stream_key: str) -> SegmentWriter:
        """
        新しいセグメントを開く。同じ分の名前が使用済みなら分を進めて空きを探す。
        限界：1分に2回以上サイズローテーションが続くと、刻印は実時間より先へずれていく
        （日付をまたぐと保存先キーの YYYY/MM/DD も先の日になる）。ずれが大きいときは警告を出す。
        """
        now_minute = self._wallclock().astimezone(timezone.utc).replace(second=0, microsecond=0)
        # 過去の分の名前はもう選ばれないので捨てる
        for old in [n for n, at in self._issued.items() if at < now_minute]:
            del self._issued[old]
        opened_at = now_minute
        while True:
            name = segment_filename(source, stream_key, opened_at, self.ext)
            path = self.output_dir / name
            if name not in self._issued and not path.exists():
                try:
                    fw = SegmentWriter(path, source, stream_key, self._clock(), opened_at)
                except FileExistsError:
                    pass
                else:
                    self._issued[name] = opened_at
                    logger.info(f"created new segment: {name}")
                    drift = opened_at - now_minute
                    if drift > _MAX_NAME_DRIFT:
                        logger.warning(f"segment timestamp runs ahead of wall clock: file={name} ahead={drift}")
                    return fw
            opened_at += timedelta(minutes=1)

    def _rotate(self, key: Tuple[str, str], fw: SegmentWriter, *, reason: str) -> None:
        logger.info(f"rotating segment: file={fw.filename} reason={reason} bytes={fw.bytes_written}")
        self._finish(fw)
        try:
            self._writers[key] = self._open_writer(fw.source, fw.stream_key)
        except OSError as e:
            # 次の Event で改めて作る
            logger.error(f"create replacement segment failed: source={fw.source} key={fw.stream_key} err={e}")
            del self._writers[key]

    def _finish(self, fw: SegmentWriter, *, final: bool = False) -> None:
        fw.close()
        self._hand_off(fw.path, final=final)

    def _hand_off(self, path: Path, *, final: bool = False) -> None:
        """配送キューへ非ブロッキングで渡す（満杯なら捨てる。ファイルは残る）"""
        label = "final segment" if final else "segment"
        try:
            self.delivery.put_nowait(path)
        except asyncio.QueueFull:
            logger.warning(f"upload queue full, {label} will be uploaded later: {path.name}")
            return
        logger.info(f"queued {label} for upload: {path.name}")
