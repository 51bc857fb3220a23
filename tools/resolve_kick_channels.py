#!/usr/bin/env python3
# 何をするスクリプトか：Kick のチャンネル slug から chatroom_id を引き、設定に貼れる YAML を表示する
# 起動のたびに API で解決すると弾かれることがあるので、ここで引いた ID を configs に固定しておく。

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx  # 何をするか：Kick API 呼び出し
import yaml   # 何をするか：設定スニペットを YAML で出す

from chatlog.core.kick import KickResolveError, resolve_chatroom_id


async def _resolve_all(slugs: list[str]) -> tuple[dict[str, int], dict[str, str]]:
    """何をする関数か：slug を順に解決し、成功/失敗を分けて返す"""
    ok: dict[str, int] = {}
    ng: dict[str, str] = {}
    async with httpx.AsyncClient(timeout=10.0) as client:
        for slug in slugs:
            try:
                room_id, resolved = await resolve_chatroom_id(slug, client)
            except KickResolveError as e:
                ng[slug] = str(e)
                continue
            ok[resolved] = room_id
    return ok, ng


def main() -> None:
    """何をする関数か：引数の slug を解決して結果と YAML スニペットを表示する"""
    p = argparse.ArgumentParser(description="Resolve Kick channel slugs to chatroom ids")
    p.add_argument("slugs", nargs="+", help="例: paymoneywubby xqc")
    args = p.parse_args()

    print(f"Resolving {len(args.slugs)} Kick channel(s)...\n")
    ok, ng = asyncio.run(_resolve_all(args.slugs))

    if ok:
        print("Resolved:")
        for slug, room_id in ok.items():
            print(f"- {slug}: {room_id}")
        print()
    if ng:
        print("Failed:")
        for slug, err in ng.items():
            print(f"- {slug}: {err}")
        print()
    if ok:
        snippet = {
            "kick": {
                "enabled": True,
                "channels": [{"slug": slug, "chatroom_id": room_id} for slug, room_id in ok.items()],
            }
        }
        print("Add this to your config:")
        print(yaml.safe_dump(snippet, sort_keys=False).rstrip())
    sys.exit(0 if ok and not ng else 1)


if __name__ == "__main__":
    main()
