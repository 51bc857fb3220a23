"""chatlog: プロジェクトのトップレベル・パッケージ
- 役割: `python -m chatlog.cli.ingest` などでチャット録画パイプラインを起動できるようにする
- 注意: 実行処理は書かず、入口の“名札”だけを置く
"""
__version__ = "0.1.0"  # pyproject.toml の version と合わせる
