# chatlog/core/message.py
# 役割：各プラットフォームのチャット発言を“共通の1件”に正規化した ChatEvent を定義する
# - 【関数】to_record / from_record：NDJSON 1行ぶんの辞書との相互変換（キーは既存アーカイブと互換）
# - 【関数】validate_event：ファイル名規約に載せられない source / stream_key を弾く
from __future__ import annotations

from dataclasses import dataclass, field  # 不変レコード
from datetime import datetime, timezone  # UTC刻印
from typing import Any, Dict, Iterable, Tuple

import orjson  # 1行JSON（高速）

_SEP = "_"  # ファイル名のフィールド区切り（source には使えない）
_PATH_CHARS = ("/", "\\")


def format_ts(ts: datetime) -> str:
    """【関数】RFC3339（UTC・秒精度・Z付き）の文字列にする"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(raw: str) -> datetime:
    """【関数】ISO/RFC3339 文字列を UTC の datetime に戻す（末尾Zも受ける）"""
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class ChatEvent:
    """1件のチャット発言（作成後は変更しない）"""

    source: str  # 例: twitch / kick
    timestamp: datetime  # UTC
    stream_key: str  # チャンネル名・slug
    actor: str  # 表示名
    actor_id: str  # プラットフォーム固有ID
    text: str  # 本文
    tags: Tuple[str, ...] = field(default_factory=tuple)  # バッジ等（順序付き）

    @property
    def key(self) -> Tuple[str, str]:
        """ライター表のキー（source, stream_key）"""
        return (self.source, self.stream_key)

    def to_record(self) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "platform": self.source,
            "timestamp": format_ts(self.timestamp),
            "channel": self.stream_key,
            "username": self.actor,
            "user_id": self.actor_id,
            "message": self.text,
        }
        if self.tags:
            rec["badges"] = ",".join(self.tags)
        return rec

    def to_line(self) -> bytes:
        """【関数】NDJSONの1行（改行付き）。不正な文字列は orjson.JSONEncodeError を送出する"""
        return orjson.dumps(self.to_record()) + b"\n"

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "ChatEvent":
        badges = rec.get("badges") or ""
        return cls(
            source=str(rec["platform"]),
            timestamp=parse_ts(rec["timestamp"]),
            stream_key=str(rec["channel"]),
            actor=str(rec.get("username", "")),
            actor_id=str(rec.get("user_id", "")),
            text=str(rec.get("message", "")),
            tags=unique_tags(badges.split(",")),
        )


def unique_tags(raw: Iterable[str]) -> Tuple[str, ...]:
    """【関数】空要素を捨て、初出順を保ったまま重複を除く（順序付き集合）"""
    seen: Dict[str, None] = {}
    for t in raw:
        t = str(t).strip()
        if t and t not in seen:
            seen[t] = None
    return tuple(seen)


def validate_event(ev: ChatEvent) -> str | None:
    """何をするか：録画できない Event なら理由を返す（問題なければ None）"""
    if not isinstance(ev, ChatEvent):
        return f"not a ChatEvent: {type(ev).__name__}"
    if not ev.source:
        return "empty source"
    if _SEP in ev.source:
        return f"source must not contain '{_SEP}': {ev.source!r}"
    if not ev.stream_key:
        return "empty stream_key"
    for ch in _PATH_CHARS:
        if ch in ev.source or ch in ev.stream_key:
            return f"path separator in source/stream_key: {ev.source!r}/{ev.stream_key!r}"
    if not isinstance(ev.timestamp, datetime):
        return "timestamp is not a datetime"
    return None
