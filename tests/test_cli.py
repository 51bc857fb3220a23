import asyncio

import pytest

from chatlog.cli import health, upload
from chatlog.cli.ingest import _parse_args
from chatlog.core.utils import Config


def _cfg(tmp_path) -> Config:
    return Config.model_validate(
        {
            "twitch": {"channels": ["ludwig"]},
            "store": {"kind": "local", "root": str(tmp_path / "remote")},
            "recorder": {"output_dir": str(tmp_path / "data")},
        }
    )


def test_ingest_args():
    args = _parse_args(["--config", "configs/x.yml", "--duration_min", "1.5"])

    assert args.config == "configs/x.yml"
    assert args.duration_min == 1.5
    assert _parse_args([]).duration_min is None


def test_health_counts_pending_and_bad_names(tmp_path):
    cfg = _cfg(tmp_path)
    out = tmp_path / "data"
    health.check_output_dir(out)
    (out / "twitch_ludwig_20251230_1030.jsonl").write_bytes(b"")
    (out / "broken.jsonl").write_bytes(b"")

    assert health.report_pending(cfg) == (1, 1)
    assert not (out / ".chatlog_health_probe").exists()


def test_health_main_exits_2_on_bad_config(tmp_path):
    with pytest.raises(SystemExit) as e:
        health.main(["--config", str(tmp_path / "missing.yml")])

    assert e.value.code == 2


def test_upload_run_delivers_and_reports_leftovers(tmp_path):
    cfg = _cfg(tmp_path)
    out = tmp_path / "data"
    out.mkdir()
    (out / "twitch_ludwig_20251230_1030.jsonl").write_bytes(b'{"message":"a"}\n')
    (out / "broken.jsonl").write_bytes(b"")

    left = asyncio.run(upload._run(cfg, older_than_min=0))

    assert left == 1
    assert (tmp_path / "remote/2025/12/30/twitch/ludwig/twitch_ludwig_20251230_1030.jsonl").exists()


def test_upload_skips_recently_modified(tmp_path):
    cfg = _cfg(tmp_path)
    out = tmp_path / "data"
    out.mkdir()
    fresh = out / "twitch_ludwig_20251230_1030.jsonl"
    fresh.write_bytes(b"")

    left = asyncio.run(upload._run(cfg, older_than_min=10))

    assert left == 0
    assert fresh.exists()
    assert not (tmp_path / "remote").exists()
