# chatlog/core/segments.py
# 役割：セグメントファイルの“名前の約束”と読み出しをまとめる
# - ファイル名：<source>_<streamKey>_<YYYYMMDD>_<HHMM>.jsonl（UTC・分精度）
# - 【関数】derive_remote_key：ファイル名だけから保存先キー YYYY/MM/DD/source/streamKey/filename を作る
# - 【関数】list_segments：出力ディレクトリから完了済みセグメント候補を拾う（起動時リスキャン用）
# - 【関数】read_segment：1行=1 JSON を読み戻す（末尾の書きかけ行は捨てる）
# ファイル名が唯一の真実。メタデータファイルは持たない。
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Collection, Iterator, List

import orjson
from loguru import logger

from chatlog.core.message import ChatEvent

SEGMENT_EXT = ".jsonl"
TS_FORMAT = "%Y%m%d_%H%M"  # 分精度のUTC刻印
_DATE_RE = re.compile(r"^\d{8}$")
_TIME_RE = re.compile(r"^\d{4}$")


class FormatError(ValueError):
    """ファイル名が規約に合わない（恒久的な不備なので再試行しない）"""


@dataclass(frozen=True)
class SegmentName:
    source: str
    stream_key: str
    opened_at: datetime  # UTC・分精度
    filename: str


def segment_filename(source: str, stream_key: str, opened_at: datetime, ext: str = SEGMENT_EXT) -> str:
    """【関数】source/stream_key/UTC分刻印からセグメントのファイル名を作る"""
    if opened_at.tzinfo is not None:
        opened_at = opened_at.astimezone(timezone.utc)
    return f"{source}_{stream_key}_{opened_at.strftime(TS_FORMAT)}{ext}"


def parse_segment_name(filename: str, ext: str = SEGMENT_EXT) -> SegmentName:
    """
    【関数】ファイル名を分解する。
    - stream_key 自体に '_' が入り得るので、先頭＝source、末尾2つ＝日付/時刻、間の全部＝stream_key と読む
    - 4トークン未満、または日付/時刻が固定パターンに合わなければ FormatError
    """
    stem = filename[: -len(ext)] if ext and filename.endswith(ext) else filename
    parts = stem.split("_")
    if len(parts) < 4:
        raise FormatError(f"invalid filename format: {filename}")

    source = parts[0]
    date_str, time_str = parts[-2], parts[-1]
    stream_key = "_".join(parts[1:-2])

    if not _DATE_RE.match(date_str) or not _TIME_RE.match(time_str):
        raise FormatError(f"parse timestamp: {filename}")
    try:
        opened_at = datetime.strptime(f"{date_str}_{time_str}", TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise FormatError(f"parse timestamp: {filename}: {e}") from e

    return SegmentName(source=source, stream_key=stream_key, opened_at=opened_at, filename=filename)


def derive_remote_key(filename: str, ext: str = SEGMENT_EXT) -> str:
    """
    【関数】保存先キーを作る。
    例: twitch_ludwig_20251230_1030.jsonl → 2025/12/30/twitch/ludwig/twitch_ludwig_20251230_1030.jsonl
    """
    name = parse_segment_name(filename, ext)
    t = name.opened_at
    return f"{t.year:04d}/{t.month:02d}/{t.day:02d}/{name.source}/{name.stream_key}/{filename}"


def list_segments(directory: str | Path, ext: str = SEGMENT_EXT, exclude: Collection[Path] = ()) -> List[Path]:
    """【関数】拡張子が一致する通常ファイルを名前順で返す（exclude は書き込み中のファイル）"""
    base = Path(directory)
    skip = {Path(p).resolve() for p in exclude}
    found: List[Path] = []
    for entry in sorted(base.iterdir()):
        if not entry.is_file() or not entry.name.endswith(ext):
            continue
        if entry.resolve() in skip:
            continue
        found.append(entry)
    return found


def read_segment(path: str | Path) -> Iterator[ChatEvent]:
    """
    【関数】セグメントを1行ずつ ChatEvent に戻す。
    - 最終行が壊れている（クラッシュで書きかけ）なら「最後のレコードは不完全」として捨てる
    - 途中の壊れた行は警告を出して飛ばす
    """
    p = Path(path)
    lines = p.read_bytes().split(b"\n")
    last = len(lines) - 1
    for i, raw in enumerate(lines):
        if not raw.strip():
            continue
        try:
            yield ChatEvent.from_record(orjson.loads(raw))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            if i == last:
                logger.warning(f"segment truncated tail discarded: file={p.name} bytes={len(raw)}")
            else:
                logger.warning(f"segment line skipped: file={p.name} line={i + 1} err={e!r}")
