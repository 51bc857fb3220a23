# chatlog/cli/health.py
# これは録画開始前の「安全確認（ヘルスチェック）」を行うCLIです。接続も配送もせず、設定・出力先・未配送の残りだけを確認します。

from __future__ import annotations

import argparse  # 何をするか：CLI引数を扱う
from pathlib import Path

from dotenv import find_dotenv, load_dotenv  # 何をするか：.env を読む（ingestと同じ方式）
from loguru import logger  # 何をするか：人間が読めるログを出す

from chatlog.core.segments import FormatError, derive_remote_key, list_segments
from chatlog.core.utils import Config, ConfigError, load_config


def check_output_dir(directory: Path) -> None:
    """何をするか：出力ディレクトリを作れるか・書けるかを確認する（録画で唯一の致命条件）"""
    directory.mkdir(parents=True, exist_ok=True)
    probe = directory / ".chatlog_health_probe"
    probe.write_bytes(b"ok")
    probe.unlink()


def report_pending(cfg: Config) -> tuple[int, int]:
    """何をするか：未配送のセグメント数と、命名不備で配送できないファイル数を数える"""
    directory = Path(cfg.recorder.output_dir)
    pending = bad = 0
    for p in list_segments(directory, cfg.recorder.extension):
        try:
            derive_remote_key(p.name, cfg.recorder.extension)
        except FormatError as e:
            bad += 1
            logger.error(f"segment name will never upload: {e}")
            continue
        pending += 1
    return pending, bad


def main(argv: list[str] | None = None) -> None:
    """何をするか：CLI入口。NG なら終了コード2"""
    load_dotenv(find_dotenv(usecwd=True))
    p = argparse.ArgumentParser(description="chatlog preflight check (no network)")
    p.add_argument("--config", default=None, help="何をするか：確認する設定ファイル")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
        check_output_dir(Path(cfg.recorder.output_dir))
        pending, bad = report_pending(cfg)
    except (ConfigError, OSError) as e:
        logger.error(f"health NG: {e}")
        raise SystemExit(2)

    channels = len(cfg.twitch.channels) + (len(cfg.kick.channels) if cfg.kick.enabled else 0)
    logger.info(f"health OK: channels={channels} store={cfg.store.kind} output_dir={cfg.recorder.output_dir}")
    logger.info(f"pending segments={pending} unuploadable={bad}")
    if bad:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
