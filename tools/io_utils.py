"""予測配列・ラベルの読み込みとレポート書き出しのヘルパー群。"""

from __future__ import annotations

import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

NPZ_PRED_PATTERN = re.compile(r"^pred(\d+)$")
NPZ_LABEL_KEY = "labels"


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S")


def sha256_file(path: Path, buf_size: int = 1 << 20) -> str:
    """SHA-256 を逐次的に計算する。"""
    hasher = hashlib.sha256()
    with path.open("rb") as fp:
        for chunk in iter(lambda: fp.read(buf_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def describe_input(path: Path) -> Dict[str, Any]:
    """レポート用に入力ファイルのパス・サイズ・ハッシュをまとめる。"""
    return {
        "path": str(path),
        "size": int(path.stat().st_size),
        "sha256": sha256_file(path),
    }


def load_array(path: Path) -> np.ndarray:
    """.npy を読み込む。pickle は許可しない。"""
    if not path.exists():
        raise FileNotFoundError(f"{path}: ファイルが見つかりません")
    return np.load(path, allow_pickle=False)


def load_prediction_files(paths: Sequence[Path], label_path: Path) -> Tuple[List[np.ndarray], np.ndarray]:
    """予測器ごとの .npy と ラベルの .npy を読み込む。"""
    predictions = [load_array(path) for path in paths]
    labels = load_array(label_path)
    return predictions, labels


def load_prediction_bundle(path: Path) -> Tuple[List[np.ndarray], np.ndarray]:
    """pred0..predN-1 と labels を持つ .npz を読み込む。"""
    if not path.exists():
        raise FileNotFoundError(f"{path}: ファイルが見つかりません")
    with np.load(path, allow_pickle=False) as data:
        indexed: Dict[int, np.ndarray] = {}
        for key in data.files:
            match = NPZ_PRED_PATTERN.match(key)
            if match:
                indexed[int(match.group(1))] = data[key]
        if NPZ_LABEL_KEY not in data.files:
            raise ValueError(f"{path}: '{NPZ_LABEL_KEY}' が含まれていません")
        labels = data[NPZ_LABEL_KEY]
    if not indexed:
        raise ValueError(f"{path}: pred0 形式の予測配列が含まれていません")
    expected = list(range(len(indexed)))
    if sorted(indexed) != expected:
        raise ValueError(f"{path}: 予測キーが連番ではありません: {sorted(indexed)}")
    return [indexed[idx] for idx in expected], labels


def save_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(payload, fp, indent=2, sort_keys=True, ensure_ascii=False)
