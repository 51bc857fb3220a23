# chatlog/runtime/pipeline.py
# 役割：録画パイプライン全体の組み立てと停止手順
# - ソース（Twitch/Kick）→ 共有Eventキュー → Recorder（バッファ＋ローテーション）→ 配送キュー → Uploader（再試行＋削除）→ 保存先
# - 起動時：出力ディレクトリを用意し（失敗は致命）、前回の取り残しをリスキャンしてから録画を始める
# - 停止時：ソースを止める→Recorder が全ライターをフラッシュ→最後のセグメントを配送へ→上限時間まで配送を待つ
from __future__ import annotations

import asyncio  # 非同期ループ/キャンセル
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from loguru import logger  # 実行ログ

from chatlog.core.kick import kick_stream
from chatlog.core.message import ChatEvent
from chatlog.core.realtime import pump
from chatlog.core.recorder import Recorder
from chatlog.core.store import ObjectStore, build_store
from chatlog.core.twitch import twitch_stream
from chatlog.core.uploader import Uploader
from chatlog.core.utils import Config

Source = Tuple[str, AsyncIterator[ChatEvent]]


def build_sources(cfg: Config, stop: asyncio.Event) -> List[Source]:
    """【関数】設定に書かれたプラットフォームごとにソースを1本ずつ作る"""
    sources: List[Source] = []
    if cfg.twitch.channels:
        logger.info(f"monitoring {len(cfg.twitch.channels)} twitch channel(s): {cfg.twitch.channels}")
        sources.append(
            ("twitch", twitch_stream(cfg.twitch.channels, stop, username=cfg.twitch.username, oauth=cfg.twitch.oauth))
        )
    if cfg.kick.enabled and cfg.kick.channels:
        logger.info(f"monitoring {len(cfg.kick.channels)} kick channel(s): {[c.slug for c in cfg.kick.channels]}")
        sources.append(("kick", kick_stream(cfg.kick.channels, stop)))
    return sources


class Pipeline:
    """
    【関数】パイプライン本体：run() が停止合図まで動き、停止手順を終えて戻る。
    戻り値は「停止時間内に配送タスクが全部終わったか」。
    """

    def __init__(
        self,
        cfg: Config,
        stop: Optional[asyncio.Event] = None,
        *,
        store: Optional[ObjectStore] = None,
        sources: Optional[Sequence[Source]] = None,
    ) -> None:
        self.cfg = cfg
        self.stop = stop if stop is not None else asyncio.Event()
        self.output_dir = Path(cfg.recorder.output_dir)
        self.events: asyncio.Queue = asyncio.Queue(maxsize=cfg.event_queue_size)
        self.delivery: asyncio.Queue = asyncio.Queue(maxsize=cfg.uploader.queue_capacity)
        self.store = store if store is not None else build_store(cfg.store)
        self._sources = sources
        rc, uc = cfg.recorder, cfg.uploader
        self.recorder = Recorder(
            self.output_dir,
            self.delivery,
            buffer_size=rc.buffer_size,
            rotate_interval_sec=rc.rotate_interval_sec,
            rotate_size_bytes=rc.rotate_size_bytes,
            check_interval_sec=rc.rotation_check_sec,
            ext=rc.extension,
        )
        self.uploader = Uploader(
            self.store,
            stop=self.stop,
            delete_after_upload=uc.delete_after_upload,
            max_retries=uc.max_retries,
            backoff_base_sec=uc.backoff_base_sec,
            ext=rc.extension,
        )

    async def run(self) -> bool:
        # 出力ディレクトリが作れないのは唯一の致命的エラー（ここで例外のまま上へ）
        self.recorder.prepare()

        # 前回の取り残し（クローズ後〜配送前、配送後〜削除前に落ちた分）を先に拾う
        await self.uploader.rescan_and_enqueue(self.output_dir)

        sources = list(self._sources) if self._sources is not None else build_sources(self.cfg, self.stop)
        source_tasks = [
            asyncio.create_task(pump(name, stream, self.events, self.stop), name=f"source:{name}")
            for name, stream in sources
        ]
        rec_task = asyncio.create_task(self.recorder.run(self.events, self.stop), name="recorder")
        up_task = asyncio.create_task(
            self.uploader.run(
                self.delivery,
                rescan_dir=self.output_dir,
                rescan_interval_sec=self.cfg.uploader.rescan_interval_sec,
                active=self.recorder.active_paths,
            ),
            name="uploader",
        )
        logger.info(f"all components started: sources={len(source_tasks)}")

        stop_wait = asyncio.create_task(self.stop.wait())
        try:
            await asyncio.wait({stop_wait, rec_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # 外からキャンセルされた場合も停止手順は必ず通す
            stop_wait.cancel()
            if rec_task.done() and not self.stop.is_set():
                logger.error("recorder stopped unexpectedly, shutting down")
            self.stop.set()
            clean = await self._shutdown(source_tasks, rec_task, up_task)
        return clean

    async def _shutdown(self, source_tasks: List[asyncio.Task], rec_task: asyncio.Task, up_task: asyncio.Task) -> bool:
        logger.info("shutdown signal received, initiating graceful shutdown...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.cfg.shutdown_timeout_sec

        def remaining() -> float:
            return max(0.0, deadline - loop.time())

        # 1) ソースを止める（受信済みで共有キューにある分は Recorder が拾う）
        for t in source_tasks:
            t.cancel()
        await asyncio.gather(*source_tasks, return_exceptions=True)

        # 2) Recorder のフラッシュ完了を待つ
        try:
            await asyncio.wait_for(asyncio.shield(rec_task), timeout=remaining())
        except asyncio.TimeoutError:
            logger.warning("shutdown timeout while flushing segments")
        except Exception as e:
            logger.exception(f"recorder error: {e!r}")

        # 3) 配送の受付を閉じ、最後のセグメントを配送へ回して待つ
        await asyncio.gather(up_task, return_exceptions=True)
        self.uploader.flush_queue(self.delivery)
        clean = await self.uploader.wait_idle(remaining())
        if clean:
            logger.info("all components stopped gracefully")
        else:
            logger.warning("shutdown timeout exceeded, pending segments stay on disk for next rescan")
        await self.store.aclose()
        return clean


async def run_pipeline(cfg: Config, stop: Optional[asyncio.Event] = None, **kwargs) -> bool:
    """【関数】入口：Pipeline を組み立てて走らせる"""
    return await Pipeline(cfg, stop, **kwargs).run()
