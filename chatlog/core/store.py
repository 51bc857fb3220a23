# chatlog/core/store.py
# これはリモート保存先（オブジェクトストア）への“送信口”です。
# パイプラインが使うのは put_file(key, path)（中身は put_object と同じ PUT）だけ。認証は環境側の関心事として外から渡します。
# - HttpObjectStore：httpx で {endpoint}/{bucket}/{key} に PUT
# - LocalObjectStore：マウント済みバケットやテスト用に、ディレクトリへ書く

from __future__ import annotations

import asyncio
from pathlib import Path
import shutil
from typing import AsyncIterator, Dict, Optional

import httpx  # HTTPクライアント（非同期）
from loguru import logger

_CHUNK = 1024 * 1024  # 送信時に1回で読むバイト数


# ---- エラー型（何が起きたかを上位で判別しやすくする） ----
class StoreError(Exception):
    """保存先への put が失敗した（配送側ではすべて一時的な失敗として再試行する）"""

class StoreAuthError(StoreError):
    """認証失敗（資格情報/権限）"""

class StoreRateLimitError(StoreError):
    """429 レート制限"""

class StoreServerError(StoreError):
    """5xx サーバ側エラー"""

class StoreNetworkError(StoreError):
    """ネットワーク到達性などの httpx 例外"""


class ObjectStore:
    """保存先の最小インターフェース"""

    name = "store"

    async def put_object(self, key: str, body: bytes) -> None:
        raise NotImplementedError

    async def put_file(self, key: str, path: Path) -> None:
        """ファイルを置く（既定は丸ごと読んで put_object。大きいファイルは各実装で逐次送る）"""
        body = await asyncio.to_thread(path.read_bytes)
        await self.put_object(key, body)

    def describe(self, key: str) -> str:
        """ログ用の保存先表記"""
        return f"{self.name}:{key}"

    async def aclose(self) -> None:
        return None


class HttpObjectStore(ObjectStore):
    """
    HTTP PUT でオブジェクトを置く最小Adapter。
    - 宛先：{endpoint}/{bucket}/{key}
    - ヘッダ：設定で渡した固定ヘッダ（Authorization など）をそのまま付ける
    - 再試行はしない（配送側の指数バックオフに任せる）
    """

    name = "http"

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.bucket = bucket.strip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.endpoint,
            headers=dict(headers or {}),
            timeout=timeout,
        )

    def describe(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key}"

    async def aclose(self) -> None:
        """HTTP接続を閉じる"""
        await self._client.aclose()

    async def put_object(self, key: str, body: bytes) -> None:
        await self._put(key, body, {})

    async def put_file(self, key: str, path: Path) -> None:
        """【関数】ファイルを少しずつ読みながら PUT する（セグメント全体をメモリに載せない）"""
        size = (await asyncio.to_thread(path.stat)).st_size  # 消えていれば FileNotFoundError のまま上へ
        await self._put(key, _iter_file(path), {"Content-Length": str(size)})

    async def _put(self, key: str, content, extra_headers: Dict[str, str]) -> None:
        path = f"/{self.bucket}/{key}"
        try:
            resp = await self._client.put(
                path,
                content=content,
                headers={"Content-Type": "application/x-ndjson", **extra_headers},
            )
        except httpx.HTTPError as e:
            raise StoreNetworkError(f"put {path}: {e!r}") from e

        if resp.is_success:
            return
        if resp.status_code in (401, 403):
            raise StoreAuthError(f"{resp.status_code} {resp.text}")
        if resp.status_code == 429:
            raise StoreRateLimitError(resp.text)
        if resp.status_code >= 500:
            raise StoreServerError(f"{resp.status_code} {resp.text}")
        raise StoreError(f"{resp.status_code} {resp.text}")


class LocalObjectStore(ObjectStore):
    """ディレクトリを保存先として扱う（キーの '/' はサブディレクトリになる）"""

    name = "local"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def describe(self, key: str) -> str:
        return str(self.root / key)

    async def put_object(self, key: str, body: bytes) -> None:
        target = self.root / key
        try:
            await asyncio.to_thread(self._write, target, body)
        except OSError as e:
            raise StoreError(f"write {target}: {e}") from e

    async def put_file(self, key: str, path: Path) -> None:
        target = self.root / key
        try:
            await asyncio.to_thread(self._copy, path, target)
        except OSError as e:
            if isinstance(e, FileNotFoundError) and not path.exists():
                raise  # 元のセグメントが消えた（配送側で扱う）
            raise StoreError(f"write {target}: {e}") from e

    @staticmethod
    def _copy(source: Path, target: Path) -> None:
        with source.open("rb") as src:  # 元が無ければここで FileNotFoundError
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            with tmp.open("wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK)
        tmp.replace(target)

    @staticmethod
    def _write(target: Path, body: bytes) -> None:
        # 途中で落ちても半端なオブジェクトを残さないよう一時名→rename
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(body)
        tmp.replace(target)


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    """ファイルを _CHUNK ずつ読み出す（読み取りはスレッドで行い、ループを止めない）"""
    f = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(f.read, _CHUNK)
            if not chunk:
                break
            yield chunk
    finally:
        f.close()


def build_store(cfg) -> ObjectStore:
    """【関数】設定の store 節から保存先を組み立てる"""
    kind = getattr(cfg, "kind", "http")
    if kind == "local":
        logger.info(f"store: local root={cfg.root}")
        return LocalObjectStore(cfg.root)
    logger.info(f"store: http endpoint={cfg.endpoint} bucket={cfg.bucket}")
    return HttpObjectStore(cfg.endpoint, cfg.bucket, headers=cfg.headers, timeout=cfg.timeout_sec)
