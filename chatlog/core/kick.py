# chatlog/core/kick.py
# 役割：Kick チャット（Pusher WebSocket）を購読して ChatEvent を流す
# - 【関数】resolve_chatroom_id：チャンネル slug → chatroom_id を Kick API で引く
# - 【関数】resolve_channels：設定で固定済みならそれを使い、無いものだけ API で解決する
# - 【関数】pusher_to_event：ChatMessageEvent を ChatEvent に正規化する
# - 【関数】kick_stream：接続→subscribe→受信（切れたら指数バックオフで再接続・購読復元）

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Tuple

import httpx  # API呼び出し（chatroom_id 解決）
import orjson
import websockets  # WebSocket接続
from loguru import logger

from chatlog.core.message import ChatEvent, parse_ts, unique_tags
from chatlog.core.realtime import Backoff, ws_ssl_context

SOURCE = "kick"
KICK_API_URL = "https://kick.com/api/v2/channels/{slug}"
KICK_PUSHER_URL = "wss://ws-us2.pusher.com/app/32cbd69e4b950bf97679?protocol=7&client=js&version=8.4.0&flash=false"
CHAT_EVENT = "App\\Events\\ChatMessageEvent"

# ブラウザ相当のヘッダ（付けないと API 側で弾かれることがある）
_BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://kick.com/",
    "Origin": "https://kick.com",
}


class KickResolveError(Exception):
    """slug から chatroom_id を引けなかった"""


async def resolve_chatroom_id(slug: str, client: httpx.AsyncClient) -> Tuple[int, str]:
    """【関数】Kick API で (chatroom_id, 正規化済み slug) を返す"""
    url = KICK_API_URL.format(slug=slug)
    try:
        resp = await client.get(url, headers=_BROWSER_HEADERS)
    except httpx.HTTPError as e:
        raise KickResolveError(f"request {url}: {e!r}") from e
    if resp.status_code != 200:
        raise KickResolveError(f"API returned status {resp.status_code}: {resp.text[:200]}")
    try:
        data = resp.json()
        return int(data["chatroom"]["id"]), str(data.get("slug") or slug)
    except (ValueError, KeyError, TypeError) as e:
        raise KickResolveError(f"unexpected API payload for {slug}: {e!r}") from e


async def resolve_channels(channels: Iterable[Any], client: httpx.AsyncClient | None = None) -> Dict[int, str]:
    """
    【関数】chatroom_id → slug の対応表を作る。
    - 設定で chatroom_id が固定されていればそのまま使う
    - 解決に失敗したチャンネルは警告してスキップ
    """
    owns = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    out: Dict[int, str] = {}
    try:
        for ch in channels:
            slug = getattr(ch, "slug", ch)
            pinned = getattr(ch, "chatroom_id", None)
            if pinned:
                out[int(pinned)] = slug
                logger.info(f"using pinned kick channel: {slug} -> id {pinned}")
                continue
            try:
                room_id, slug = await resolve_chatroom_id(slug, client)
            except KickResolveError as e:
                logger.warning(f"failed to resolve kick channel '{slug}': {e} (skipping)")
                continue
            out[room_id] = slug
            logger.info(f"resolved kick channel: {slug} -> id {room_id}")
    finally:
        if owns:
            await client.aclose()
    return out


def _badges(sender: Mapping[str, Any]) -> tuple[str, ...]:
    identity = sender.get("identity") or {}
    names = []
    for b in identity.get("badges") or []:
        btype = str(b.get("type") or "")
        text = str(b.get("text") or "")
        if btype:
            names.append(f"{btype}:{text}" if text else btype)
    return unique_tags(names)


def pusher_to_event(frame: Mapping[str, Any], rooms: Mapping[int, str]) -> ChatEvent | None:
    """【関数】Pusher のフレームを ChatEvent へ。チャット以外・未知の部屋は None"""
    if frame.get("event") != CHAT_EVENT:
        return None
    data = frame.get("data")
    if isinstance(data, (str, bytes)):
        data = orjson.loads(data)  # Pusher は data を文字列で二重包装してくる
    if not isinstance(data, Mapping):
        return None
    room_id = data.get("chatroom_id")
    slug = rooms.get(int(room_id)) if room_id is not None else None
    if slug is None:
        logger.warning(f"kick message from unknown chatroom id: {room_id}")
        return None
    sender = data.get("sender") or {}
    created = data.get("created_at")
    try:
        ts = parse_ts(created) if created else datetime.now(timezone.utc)
    except ValueError:
        ts = datetime.now(timezone.utc)
    return ChatEvent(
        source=SOURCE,
        timestamp=ts,
        stream_key=slug,
        actor=str(sender.get("username", "")),
        actor_id=str(sender.get("id", "")),
        text=str(data.get("content", "")),
        tags=_badges(sender),
    )


def _subscribe_msg(room_id: int) -> str:
    """【関数】購読メッセージ作成：chatrooms.<id>.v2 を subscribe"""
    return orjson.dumps({"event": "pusher:subscribe", "data": {"auth": "", "channel": f"chatrooms.{room_id}.v2"}}).decode()


async def kick_stream(
    channels: Iterable[Any],
    stop: asyncio.Event,
    *,
    url: str = KICK_PUSHER_URL,
    rooms: Mapping[int, str] | None = None,
) -> AsyncIterator[ChatEvent]:
    """
    【関数】Kick の発言ストリーム（async generator）
    - 最初に chatroom_id を解決（1つも解決できなければ何も流さず終わる）
    - pusher:ping には pusher:pong を返す
    """
    if rooms is None:
        rooms = await resolve_channels(channels)
    if not rooms:
        logger.error("no valid kick channels could be resolved")
        return

    backoff = Backoff()
    while not stop.is_set():
        try:
            logger.info(f"kick WS connecting ({len(rooms)} chatroom(s)) ...")
            async with websockets.connect(url, ssl=ws_ssl_context(), ping_interval=20, close_timeout=10) as ws:
                for room_id, slug in rooms.items():
                    await ws.send(_subscribe_msg(room_id))
                    logger.info(f"subscribed kick channel: {slug}")
                backoff.reset()

                async for raw in ws:
                    try:
                        frame = orjson.loads(raw)
                    except orjson.JSONDecodeError:
                        logger.warning("skip: invalid json")
                        continue
                    name = frame.get("event")
                    if name == "pusher:ping":
                        await ws.send('{"event":"pusher:pong","data":{}}')
                        continue
                    if name == "pusher:error":
                        logger.warning(f"kick pusher error: {frame.get('data')}")
                        continue
                    try:
                        ev = pusher_to_event(frame, rooms)
                    except (orjson.JSONDecodeError, TypeError, ValueError) as e:
                        logger.warning(f"skip: bad kick payload {e!r}")
                        continue
                    if ev is not None:
                        yield ev
                    if stop.is_set():
                        return
        except asyncio.CancelledError:
            logger.info("kick WS stream cancelled.")
            raise
        except Exception as e:
            logger.warning(f"kick WS error: {e!r} (reconnect in {backoff.current:.1f}s)")
        if await backoff.wait(stop):
            return
