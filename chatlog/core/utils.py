# chatlog/core/utils.py
# 役割：設定(YAML)の読み込み・base.ymlとの深いマージ・環境変数の上書き・Pydanticでの型検査を行う“設定ローダー”
from __future__ import annotations

from pathlib import Path  # ファイルパスを安全に扱う
from typing import Any, Dict, List, Literal, Mapping  # 型ヒント用
import os  # 環境変数での上書き
import copy  # 辞書のディープコピーで安全に合成
import yaml  # YAML読取（pyyaml）
from pydantic import BaseModel, Field, ValidationError, model_validator  # 型検査モデル（v2）

DEFAULT_CONFIG_PATH = "configs/config.yml"
_MB = 1024 * 1024


class ConfigError(ValueError):
    """設定ファイルが読めない/値が不正（起動前に止める）"""


# ─────────────────────────────────────────────────────────────
# Pydanticモデル定義（configs/base.yml のキーに対応）

class TwitchCfg(BaseModel):
    username: str = ""
    oauth: str = ""  # 空なら匿名(justinfan)で読み取り専用接続
    channels: List[str] = Field(default_factory=list)

class KickChannelCfg(BaseModel):
    slug: str
    chatroom_id: int | None = None  # 未指定なら起動時に API で解決

class KickCfg(BaseModel):
    enabled: bool = False
    channels: List[KickChannelCfg] = Field(default_factory=list)

class StoreCfg(BaseModel):
    kind: Literal["http", "local"] = "http"
    endpoint: str = ""
    bucket: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_sec: float = 60.0
    root: str = ""  # kind=local のときの保存先ディレクトリ

class RecorderCfg(BaseModel):
    output_dir: str = "./data"
    rotate_minutes: float = Field(60, gt=0)
    rotate_megabytes: float = Field(100, gt=0)
    buffer_size: int = Field(100, ge=1)  # 何件たまったら同期フラッシュするか
    rotation_check_sec: float = Field(60, gt=0)
    event_queue_size: int | None = None  # 未指定なら buffer_size と同じ
    extension: str = ".jsonl"

    @property
    def rotate_interval_sec(self) -> float:
        return float(self.rotate_minutes) * 60.0

    @property
    def rotate_size_bytes(self) -> int:
        return int(float(self.rotate_megabytes) * _MB)

class UploaderCfg(BaseModel):
    delete_after_upload: bool = True
    max_retries: int = Field(3, ge=0)
    queue_capacity: int = Field(100, ge=1)
    rescan_interval_sec: float = Field(0, ge=0)  # 0=起動時のみ
    backoff_base_sec: float = Field(1.0, gt=0)

class LoggingCfg(BaseModel):
    level: str = "INFO"
    path: str | None = "logs/chatlog.log"
    rotate_mb: int | None = 64

class Config(BaseModel):
    """プロジェクト共通設定：base.yml を土台に指定ファイルの差分を上書きして出来上がる最終形"""
    twitch: TwitchCfg = Field(default_factory=TwitchCfg)
    kick: KickCfg = Field(default_factory=KickCfg)
    store: StoreCfg = Field(default_factory=StoreCfg)
    recorder: RecorderCfg = Field(default_factory=RecorderCfg)
    uploader: UploaderCfg = Field(default_factory=UploaderCfg)
    logging: LoggingCfg = Field(default_factory=LoggingCfg)
    shutdown_timeout_sec: float = Field(30.0, gt=0)

    @model_validator(mode="after")
    def _check(self) -> "Config":
        if self.twitch.channels and self.twitch.oauth and not self.twitch.username:
            raise ValueError("twitch.username is required when twitch.oauth is set")
        total = len(self.twitch.channels) + (len(self.kick.channels) if self.kick.enabled else 0)
        if total == 0:
            raise ValueError("at least one channel is required (twitch or kick)")
        if self.store.kind == "http":
            if not self.store.endpoint:
                raise ValueError("store.endpoint is required (or set STORE_ENDPOINT)")
            if not self.store.bucket:
                raise ValueError("store.bucket is required (or set STORE_BUCKET)")
        elif not self.store.root:
            raise ValueError("store.root is required when store.kind is local")
        return self

    @property
    def event_queue_size(self) -> int:
        return self.recorder.event_queue_size or self.recorder.buffer_size


# ─────────────────────────────────────────────────────────────
# 【関数】YAML読取：指定パスのYAMLを辞書で返す（空は {}）
def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)  # コメント以外を読み込む
    except OSError as e:
        raise ConfigError(f"read config file: {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parse config file: {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {path}")
    return data

# ─────────────────────────────────────────────────────────────
# 【関数】深いマージ：base の上に override を重ねる（辞書は再帰、配列/スカラは置換）
def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = deep_merge(merged[k], v)  # 再帰的に辞書を合成
        else:
            merged[k] = copy.deepcopy(v)  # 配列・数値・文字列などは上書き
    return merged

# ─────────────────────────────────────────────────────────────
# 【関数】環境変数の上書き：秘密情報は設定ファイルに書かず環境から渡す
def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str] | None = None) -> Dict[str, Any]:
    env = os.environ if env is None else env
    out = copy.deepcopy(data)
    if env.get("TWITCH_OAUTH"):
        out.setdefault("twitch", {})["oauth"] = env["TWITCH_OAUTH"]
    store = out.setdefault("store", {})
    if env.get("STORE_ENDPOINT"):
        store["endpoint"] = env["STORE_ENDPOINT"]
    if env.get("STORE_BUCKET"):
        store["bucket"] = env["STORE_BUCKET"]
    if env.get("STORE_TOKEN"):
        headers = dict(store.get("headers") or {})
        headers["Authorization"] = f"Bearer {env['STORE_TOKEN']}"
        store["headers"] = headers
    return out

# ─────────────────────────────────────────────────────────────
# 【関数】パス解決：与えられた config と同じディレクトリの base.yml を土台にする
def resolve_config_paths(config_path: str | os.PathLike[str]) -> tuple[Path, Path]:
    cpath = Path(config_path).resolve()
    base = cpath.parent / "base.yml"
    if not base.is_file():
        # もし別ディレクトリから呼ばれても、プロジェクト直下の configs/base.yml を探す
        root = Path(__file__).resolve().parents[2]  # .../chatlog/core/utils.py → プロジェクトルート
        alt = root / "configs" / "base.yml"
        if alt.is_file():
            base = alt
    return base, cpath

# ─────────────────────────────────────────────────────────────
# 【関数】設定ローダー：base.yml＋指定yml を合成し、環境変数を重ね、Pydantic で型検査した Config を返す
def load_config(config_path: str | os.PathLike[str] | None = None, env: Mapping[str, str] | None = None) -> Config:
    """
    使い方：
      from chatlog.core.utils import load_config
      cfg = load_config("configs/config.yml")
    効能：
      - base.yml を土台に、指定ファイルの差分を“深く”上書き
      - TWITCH_OAUTH / STORE_ENDPOINT / STORE_BUCKET / STORE_TOKEN で上書き
      - 不正な値は ConfigError（どのキーが悪いかをメッセージに含める）
    """
    if config_path is None:
        config_path = (os.environ if env is None else env).get("CONFIG_PATH") or DEFAULT_CONFIG_PATH
    base_path, cfg_path = resolve_config_paths(str(config_path))
    if not cfg_path.is_file():
        raise ConfigError(f"config file not found: {cfg_path}")
    base = _read_yaml(base_path) if base_path.is_file() and base_path != cfg_path else {}
    override = _read_yaml(cfg_path)
    merged = apply_env_overrides(deep_merge(base, override), env)
    try:
        return Config.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid config {cfg_path}: {e}") from e
