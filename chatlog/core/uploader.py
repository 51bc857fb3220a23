# chatlog/core/uploader.py
# 役割：完了セグメントをリモート保存先へ“最低1回”届け、届いたことを確かめてからローカルを消す“配送係”
# - 【関数】upload_with_retry：最大 max_retries+1 回。失敗ごとに 2^attempt 秒待つ（停止合図で中断）
# - 【関数】rescan_and_enqueue：出力ディレクトリを走査し、前回クラッシュで取り残されたセグメントも同じ経路で配送
# - 【関数】run：配送キューを読み続け、1ファイル=1タスクで並行配送（遅い配送が録画を止めない）
# - 【関数】wait_idle：停止時、走っている配送タスクを上限時間まで待つ（超えたら見捨てる。ファイルは残る）
# 失敗はすべてログで表に出すだけ。プロセスは止めない。

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Collection, Iterable, Optional, Set

from loguru import logger

from chatlog.core.realtime import STOPPED, get_or_stop
from chatlog.core.segments import SEGMENT_EXT, FormatError, derive_remote_key, list_segments
from chatlog.core.store import ObjectStore, StoreError

ActivePaths = Callable[[], Awaitable[Iterable[Path]]]


async def _interruptible_sleep(delay: float, stop: asyncio.Event) -> bool:
    """何をするか：delay 秒待つ。停止合図が来たら True を返して即座に戻る"""
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class Uploader:
    """
    配送係の本体。
    - 1ファイルにつき配送タスクは同時に1つ（起動時リスキャンとローテーション由来の重複を防ぐ）
    - 命名が壊れたファイルは恒久エラーとして記録し、再試行しない
    - 配送を確認できなかったファイルは決して消さない
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        stop: Optional[asyncio.Event] = None,
        delete_after_upload: bool = True,
        max_retries: int = 3,
        backoff_base_sec: float = 1.0,
        ext: str = SEGMENT_EXT,
        sleep: Callable[[float, asyncio.Event], Awaitable[bool]] = _interruptible_sleep,
    ) -> None:
        self.store = store
        self.stop = stop if stop is not None else asyncio.Event()
        self.delete_after_upload = delete_after_upload
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_sec = float(backoff_base_sec)
        self.ext = ext
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self._inflight: Set[Path] = set()

    @property
    def pending(self) -> int:
        """走っている配送タスク数"""
        return len(self._tasks)

    # ---- 1ファイルの配送 ----
    async def upload_with_retry(self, path: str | Path) -> bool:
        """【関数】1ファイルを配送する。届いたら True（ローカル削除は設定次第）"""
        path = Path(path)
        filename = path.name
        try:
            key = derive_remote_key(filename, self.ext)
        except FormatError as e:
            logger.error(f"skip segment (bad name, not retried): {filename}: {e}")
            return False

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                size = (await asyncio.to_thread(path.stat)).st_size
                await self.store.put_file(key, path)
            except FileNotFoundError:
                # 別経路で配送→削除済み
                logger.info(f"segment gone before upload, nothing to do: {filename}")
                return False
            except (StoreError, OSError) as e:
                err = e
            else:
                logger.info(f"uploaded {filename} to {self.store.describe(key)} bytes={size}")
                if self.delete_after_upload:
                    self._delete_local(path)
                return True

            if attempt >= self.max_retries:
                break
            backoff = self.backoff_base_sec * (2 ** attempt)
            logger.warning(
                f"upload attempt {attempt + 1}/{attempts} failed for {filename}: {err!r}. retrying in {backoff:g}s"
            )
            if self.stop.is_set() or await self._sleep(backoff, self.stop):
                logger.info(f"upload abandoned by shutdown, kept for next rescan: {filename}")
                return False

        logger.warning(f"failed to upload {filename} after {attempts} attempt(s); kept on disk")
        return False

    def _delete_local(self, path: Path) -> None:
        """ローカル削除。失敗してもディスクが少し残るだけなので記録のみ"""
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"error deleting local file {path}: {e}")
        else:
            logger.info(f"deleted local file {path}")

    # ---- タスク管理 ----
    def submit(self, path: str | Path) -> Optional[asyncio.Task]:
        """【関数】1ファイルの配送タスクを起こす（同じファイルが配送中なら何もしない）"""
        path = Path(path)
        if path in self._inflight:
            logger.debug(f"already uploading: {path.name}")
            return None
        self._inflight.add(path)
        task = asyncio.create_task(self.upload_with_retry(path), name=f"upload:{path.name}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, p=path: self._on_done(t, p))
        return task

    def _on_done(self, task: asyncio.Task, path: Path) -> None:
        self._tasks.discard(task)
        self._inflight.discard(path)
        if task.cancelled():
            logger.warning(f"upload cancelled, kept for next rescan: {path.name}")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"upload task crashed: {path.name}: {exc!r}")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        【関数】走っている配送タスクがすべて終わるまで待つ。
        timeout を超えたら残りを取り消して False（ファイルは残るので次回リスキャンで再送される）
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        if not self._tasks:
            return True

        stragglers = list(self._tasks)
        logger.warning(f"shutdown timeout exceeded: abandoning {len(stragglers)} upload(s)")
        for t in stragglers:
            t.cancel()
        await asyncio.gather(*stragglers, return_exceptions=True)
        return False

    # ---- リスキャン ----
    async def rescan_and_enqueue(
        self,
        directory: str | Path,
        exclude: Collection[Path] = (),
        active: Optional[ActivePaths] = None,
    ) -> int:
        """
        【関数】ディレクトリ内の完了セグメントを拾い、1ファイル=1タスクで配送する。起こした数を返す
        active は一覧を取り終えた“後”に問い合わせる（一覧の途中で開かれたライターも除外できる）
        """
        logger.info(f"scanning {directory} for existing segments to upload...")
        try:
            paths = await asyncio.to_thread(list_segments, directory, self.ext, exclude)
        except OSError as e:
            logger.warning(f"failed to scan for existing segments: dir={directory} err={e}")
            return 0
        if active is not None and paths:
            writing = {Path(p).resolve() for p in await active()}
            paths = [p for p in paths if p.resolve() not in writing]
        if not paths:
            logger.info("no existing segments found to upload")
            return 0
        scheduled = sum(1 for p in paths if self.submit(p) is not None)
        logger.info(f"found {len(paths)} existing segment(s) to upload (scheduled={scheduled})")
        return scheduled

    async def _periodic_rescan(self, directory: Path, interval: float, active: Optional[ActivePaths]) -> None:
        """一定周期のリスキャン。書き込み中のセグメントは active で除外する"""
        while not self.stop.is_set():
            if await _interruptible_sleep(interval, self.stop):
                return
            await self.rescan_and_enqueue(directory, active=active)

    # ---- 実行ループ ----
    async def run(
        self,
        queue: asyncio.Queue,
        *,
        rescan_dir: str | Path | None = None,
        rescan_interval_sec: float = 0.0,
        active: Optional[ActivePaths] = None,
    ) -> None:
        """【関数】停止合図まで配送キューを読み、届いたパスごとに配送タスクを起こす"""
        periodic = None
        if rescan_dir is not None and rescan_interval_sec > 0:
            periodic = asyncio.create_task(
                self._periodic_rescan(Path(rescan_dir), float(rescan_interval_sec), active),
                name="uploader-rescan",
            )
        stop_wait = asyncio.create_task(self.stop.wait(), name="uploader-stop")
        try:
            while not self.stop.is_set():
                path = await get_or_stop(queue, stop_wait)
                if path is STOPPED:
                    break
                self.submit(path)
        finally:
            for t in (periodic, stop_wait):
                if t is None:
                    continue
                t.cancel()
                try:
                    await t
                except asyncio.CancelledError:
                    pass
            logger.info(f"uploader intake stopped: in_flight={self.pending}")

    def flush_queue(self, queue: asyncio.Queue) -> int:
        """【関数】キューに残ったパスを配送タスクに回す（停止後は各1回だけ試みる）"""
        n = 0
        while True:
            try:
                path = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if self.submit(path) is not None:
                n += 1
        if n:
            logger.info(f"final segments handed to uploader: {n}")
        return n
