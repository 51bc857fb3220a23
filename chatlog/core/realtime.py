# chatlog/core/realtime.py
# 役割：ソース（Twitch/Kick の WS 購読）とパイプラインの“つなぎ目”
# - 【関数】get_or_stop：キューの次の要素と停止合図のどちらか早い方を待つ（ポーリングしない）
# - 【関数】pump：ソースの async generator から受けた Event を共有キューへ流す
# - 【関数】Backoff：再接続の指数バックオフ（上限あり）
# - 【関数】ws_ssl_context：CA検証付きの SSL コンテキスト

from __future__ import annotations

import asyncio  # 再接続の待ち・キャンセル制御
import os
import ssl
from typing import Any, AsyncIterator

import certifi  # CA検証を“Mozilla CAバンドル”で統一するために使う
from loguru import logger

from chatlog.core.message import ChatEvent

WS_BACKOFF_MAX = 30.0  # 再接続時のバックオフ上限（秒）

STOPPED = object()  # get_or_stop が停止で起きたときの目印


async def get_or_stop(queue: asyncio.Queue, stop_wait: asyncio.Future) -> Any:
    """【関数】queue.get と停止合図を同時に待つ。停止が先なら STOPPED を返す（要素は取りこぼさない）"""
    getter = asyncio.ensure_future(queue.get())
    try:
        done, _ = await asyncio.wait({getter, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        getter.cancel()
        raise
    if getter in done:
        return getter.result()
    getter.cancel()
    try:
        # cancel と同時に取り出しが済んでいた場合はその要素を返す
        return await getter
    except asyncio.CancelledError:
        return STOPPED


class Backoff:
    """何をするか：1秒から倍々で伸び、上限で止まる待ち時間を配る"""

    def __init__(self, start: float = 1.0, maximum: float = WS_BACKOFF_MAX) -> None:
        self.start = start
        self.maximum = maximum
        self.current = start

    def reset(self) -> None:
        self.current = self.start

    async def wait(self, stop: asyncio.Event) -> bool:
        """待つ。停止合図が来たら True を返して即座に戻る"""
        delay = self.current
        self.current = min(self.current * 2.0, self.maximum)
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


def ws_ssl_context() -> ssl.SSLContext:
    """【関数】WS接続用のSSL設定（既定=Mozilla CA。CHATLOG_SSL_CAFILE で差し替え可）"""
    cafile = os.getenv("CHATLOG_SSL_CAFILE") or certifi.where()
    return ssl.create_default_context(cafile=cafile)


async def pump(name: str, stream: AsyncIterator[ChatEvent], events: asyncio.Queue, stop: asyncio.Event) -> int:
    """
    【関数】ソース1本ぶんの Event を共有キューへ入れ続ける。
    - キューが満杯なら待つ（取りこぼさない）。停止合図で抜ける
    - ソース側の例外はここで止め、他のソースや録画は止めない
    """
    count = 0
    logger.info(f"source start: {name}")
    try:
        async for ev in stream:
            await events.put(ev)  # 受け取った分は必ず渡してから停止を見る
            count += 1
            if count % 10000 == 0:
                logger.info(f"source {name}: events={count}")
            if stop.is_set():
                break
    except asyncio.CancelledError:
        logger.info(f"source cancelled: {name}")
        raise
    except Exception as e:
        logger.exception(f"source {name} error → stop: {e!r}")
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:  # 片付け中の失敗は記録だけ
                logger.warning(f"source {name} close error: {e!r}")
        logger.info(f"source end: {name} events={count}")
    return count
