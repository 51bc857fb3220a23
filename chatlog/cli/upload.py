# chatlog/cli/upload.py
# 役割：出力ディレクトリに残ったセグメントを“今すぐ”配送して終わる手動リスキャンCLI
# 録画プロセスが長く再起動しないとき、配送キュー満杯で取りこぼしたセグメントを拾うのに使う。
# 注意：録画中のプロセスと同じディレクトリで使うときは、書き込み中のファイルを避けるため --older_than_min を付ける。

from __future__ import annotations

import argparse
import asyncio
import time
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from loguru import logger

from chatlog.core.segments import list_segments
from chatlog.core.store import build_store
from chatlog.core.uploader import Uploader
from chatlog.core.utils import ConfigError, load_config


def _recently_modified(directory: Path, ext: str, older_than_min: float) -> list[Path]:
    """何をするか：最終更新が新しすぎる（書き込み中かもしれない）ファイルを返す"""
    if older_than_min <= 0:
        return []
    cutoff = time.time() - older_than_min * 60.0
    return [p for p in list_segments(directory, ext) if p.stat().st_mtime > cutoff]


async def _run(cfg, older_than_min: float) -> int:
    """【関数】1回だけリスキャンし、全配送タスクの終了を待って、配送できなかった数を返す"""
    directory = Path(cfg.recorder.output_dir)
    ext = cfg.recorder.extension
    store = build_store(cfg.store)
    uploader = Uploader(
        store,
        delete_after_upload=cfg.uploader.delete_after_upload,
        max_retries=cfg.uploader.max_retries,
        backoff_base_sec=cfg.uploader.backoff_base_sec,
        ext=ext,
    )
    try:
        exclude = _recently_modified(directory, ext, older_than_min) if directory.is_dir() else []
        for p in exclude:
            logger.info(f"skip recently modified segment: {p.name}")
        await uploader.rescan_and_enqueue(directory, exclude=exclude)
        await uploader.wait_idle()
    finally:
        await store.aclose()
    if not cfg.uploader.delete_after_upload:
        return 0
    left = list_segments(directory, ext, exclude) if directory.is_dir() else []
    return len(left)


def main(argv: list[str] | None = None) -> None:
    """【関数】エントリ：設定を読み、残りのセグメントを配送する（残ったら終了コード1）"""
    load_dotenv(find_dotenv(usecwd=True))
    p = argparse.ArgumentParser(description="Upload segments left in the output directory, then exit")
    p.add_argument("--config", default=None, help="設定ファイル（例：configs/config.yml）")
    p.add_argument("--older_than_min", type=float, default=0.0, help="この分数より新しいファイルは触らない")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"failed to load config: {e}")
        raise SystemExit(2)

    left = asyncio.run(_run(cfg, args.older_than_min))
    if left:
        logger.warning(f"upload finished with {left} segment(s) still on disk")
        raise SystemExit(1)
    logger.info("upload finished: nothing left on disk")


if __name__ == "__main__":
    main()
