# chatlog/cli/ingest.py
# 役割：チャットを購読し、セグメント（NDJSON）として録画→保存先へ配送するCLI
# - 【関数】_parse_args：引数（config/duration_min）を読む
# - 【関数】setup_logs：stderr とサイズローテーション付きの run.log を用意する
# - 【関数】_run：シグナル（Ctrl+C/SIGTERM）を停止合図につなぎ、パイプラインを走らせる
# - 【関数】main：.env と設定を読み、録画を実行する

from __future__ import annotations

import argparse  # CLI引数
import asyncio   # 非同期実行
import signal    # Ctrl+C/SIGTERM を捕まえて安全停止する
import sys
from pathlib import Path

from dotenv import find_dotenv, load_dotenv  # .env を読み込む
from loguru import logger  # 進捗ログ

from chatlog.core.utils import ConfigError, LoggingCfg, load_config  # 【関数】設定ローダー（base→指定ファイル→環境変数の順に上書き）
from chatlog.runtime.pipeline import run_pipeline

# 全シンク共通：PIDを含め、同時起動時に発生源を判別しやすくする
LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | pid={process.id} | {name}:{function}:{line} - {message}"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """【関数】引数を読む：--config（省略時は CONFIG_PATH → configs/config.yml）、--duration_min（任意）"""
    p = argparse.ArgumentParser(description="Record live chat to rotated NDJSON segments and upload them")
    p.add_argument("--config", default=None, help="設定ファイル（例：configs/config.yml）")
    p.add_argument(
        "--duration_min",
        type=float,
        default=None,
        help="録画分数。指定しなければ停止シグナル（Ctrl+C/SIGTERM）まで続ける",
    )
    return p.parse_args(argv)


def setup_logs(log_cfg: LoggingCfg) -> list[int]:
    """何をする関数か：stderr シンクと、サイズでローテーションする run.log シンクを初期化する"""
    logger.remove()
    sink_ids = [logger.add(sys.stderr, level=log_cfg.level, format=LOG_FORMAT)]
    if log_cfg.path:
        path = Path(log_cfg.path).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"log_path_mkdir_failed path={path} err={exc}")
            return sink_ids
        rotation = f"{int(log_cfg.rotate_mb or 64)} MB"
        sink_ids.append(logger.add(path, level=log_cfg.level, rotation=rotation, enqueue=True, format=LOG_FORMAT))
    return sink_ids


def _install_signal_handlers(stop: asyncio.Event) -> None:
    """何をするか：SIGINT/SIGTERM を受けたら停止合図を立てる"""
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        logger.warning(f"signal received: {signal.Signals(signum).name} → shutdown requested")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Windows など add_signal_handler が無い環境
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(_on_signal, signum))


async def _run(cfg, duration_min: float | None) -> bool:
    """【関数】実体：停止合図（シグナル or 制限時間）までパイプラインを走らせる"""
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    if duration_min is not None and duration_min > 0:
        loop = asyncio.get_running_loop()
        loop.call_later(duration_min * 60.0, stop.set)
        logger.info(f"ingest will stop after {duration_min:g} min")
    return await run_pipeline(cfg, stop)


def main(argv: list[str] | None = None) -> None:
    """【関数】エントリ：.env と設定を読み、録画を実行する"""
    load_dotenv(find_dotenv(usecwd=True))  # 何をするか：カレント直下の .env を読み込んでから設定を読む
    args = _parse_args(argv)
    logger.info("chatlog starting...")
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"failed to load config: {e}")
        raise SystemExit(2)
    sink_ids = setup_logs(cfg.logging)
    logger.info("configuration loaded successfully")

    try:
        clean = asyncio.run(_run(cfg, args.duration_min))
        logger.info(f"chatlog stopped (clean={clean})")
    except OSError as e:
        # 出力ディレクトリが作れない等、録画を始められない
        logger.error(f"failed to start pipeline: {e}")
        raise SystemExit(2)
    finally:
        for sink_id in sink_ids:
            logger.remove(sink_id)


if __name__ == "__main__":
    main()
