# chatlog/core/twitch.py
# 役割：Twitch チャット（IRC over WebSocket）を購読して ChatEvent を流す
# - 【関数】parse_irc：IRCv3 タグ付きの1行を分解する
# - 【関数】privmsg_to_event：PRIVMSG を ChatEvent に正規化する
# - 【関数】twitch_stream：接続→JOIN→受信（切れたら指数バックオフで再接続・JOIN復元）

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List

import websockets  # WebSocket接続
from loguru import logger

from chatlog.core.message import ChatEvent, unique_tags
from chatlog.core.realtime import Backoff, ws_ssl_context

TWITCH_WS_URL = "wss://irc-ws.chat.twitch.tv:443"
SOURCE = "twitch"

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass
class IrcMessage:
    command: str
    params: List[str] = field(default_factory=list)
    prefix: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> str:
        return self.prefix.split("!", 1)[0]


def _unescape_tag(value: str) -> str:
    out: List[str] = []
    it = iter(value)
    for ch in it:
        if ch == "\\":
            nxt = next(it, "")
            out.append(_TAG_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def parse_irc(line: str) -> IrcMessage:
    """【関数】'@tags :prefix COMMAND params :trailing' を分解する（壊れた行は ValueError）"""
    rest = line.rstrip("\r\n")
    tags: Dict[str, str] = {}
    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        for item in raw_tags.split(";"):
            k, _, v = item.partition("=")
            if k:
                tags[k] = _unescape_tag(v)
    prefix = ""
    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")
    trailing = None
    if " :" in rest:
        rest, _, trailing = rest.partition(" :")
    elif rest.startswith(":"):
        rest, trailing = "", rest[1:]
    parts = rest.split()
    if not parts:
        raise ValueError(f"irc line without command: {line!r}")
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, prefix=prefix, tags=tags)


def _badge_names(raw: str) -> tuple[str, ...]:
    # "moderator/1,subscriber/12" → ("moderator", "subscriber")
    return unique_tags(b.split("/", 1)[0] for b in raw.split(","))


def privmsg_to_event(msg: IrcMessage, now: datetime | None = None) -> ChatEvent | None:
    """【関数】PRIVMSG を ChatEvent へ。対象外のコマンドは None"""
    if msg.command != "PRIVMSG" or len(msg.params) < 2:
        return None
    channel = msg.params[0].lstrip("#")
    text = msg.params[1]
    if text.startswith("\x01ACTION ") and text.endswith("\x01"):
        text = text[len("\x01ACTION "):-1]  # /me 発言

    ts = now or datetime.now(timezone.utc)
    sent = msg.tags.get("tmi-sent-ts")
    if sent and sent.isdigit():
        ts = datetime.fromtimestamp(int(sent) / 1000.0, tz=timezone.utc)

    return ChatEvent(
        source=SOURCE,
        timestamp=ts,
        stream_key=channel,
        actor=msg.tags.get("display-name") or msg.nick,
        actor_id=msg.tags.get("user-id", ""),
        text=text,
        tags=_badge_names(msg.tags.get("badges", "")),
    )


def _credentials(username: str, oauth: str) -> tuple[str, str | None]:
    """何をするか：NICK/PASS を決める。oauth が無ければ匿名の justinfan で読むだけ"""
    if not oauth:
        return f"justinfan{random.randint(10000, 99999)}", None
    token = oauth if oauth.startswith("oauth:") else f"oauth:{oauth}"
    return username.lower(), token


async def twitch_stream(
    channels: Iterable[str],
    stop: asyncio.Event,
    *,
    username: str = "",
    oauth: str = "",
    url: str = TWITCH_WS_URL,
) -> AsyncIterator[ChatEvent]:
    """
    【関数】Twitch の発言ストリーム（async generator）
    - 再接続：切れたら指数バックオフで接続し直し、JOIN を復元する
    - PING には PONG を返す。RECONNECT 指示が来たら張り直す
    """
    chans = [c.lower().lstrip("#") for c in channels if c]
    nick, password = _credentials(username, oauth)
    backoff = Backoff()

    while not stop.is_set():
        try:
            logger.info(f"twitch WS connecting to {url} as {nick} ...")
            async with websockets.connect(url, ssl=ws_ssl_context(), ping_interval=20, close_timeout=10) as ws:
                await ws.send("CAP REQ :twitch.tv/tags twitch.tv/commands")
                if password:
                    await ws.send(f"PASS {password}")
                await ws.send(f"NICK {nick}")
                for ch in chans:
                    await ws.send(f"JOIN #{ch}")
                    logger.info(f"joined twitch channel: {ch}")
                backoff.reset()  # 成功したらバックオフをリセット

                reconnect = False
                async for raw in ws:
                    for line in str(raw).split("\r\n"):
                        if not line:
                            continue
                        try:
                            msg = parse_irc(line)
                        except ValueError:
                            logger.warning(f"skip: invalid irc line {line[:80]!r}")
                            continue
                        if msg.command == "PING":
                            await ws.send(f"PONG :{msg.params[-1] if msg.params else 'tmi.twitch.tv'}")
                            continue
                        if msg.command == "RECONNECT":
                            logger.info("twitch asked to reconnect")
                            reconnect = True
                            break
                        if msg.command == "NOTICE" and msg.params and "authentication failed" in msg.params[-1].lower():
                            logger.error(f"twitch login failed: {msg.params[-1]}")
                            continue
                        ev = privmsg_to_event(msg)
                        if ev is not None:
                            yield ev
                    if reconnect or stop.is_set():
                        break
                if stop.is_set():
                    return
        except asyncio.CancelledError:
            logger.info("twitch WS stream cancelled.")
            raise
        except Exception as e:
            logger.warning(f"twitch WS error: {e!r} (reconnect in {backoff.current:.1f}s)")
        if await backoff.wait(stop):
            return
