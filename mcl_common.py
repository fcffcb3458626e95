"""MCL 系レイヤーで共有する例外と入力検証ヘルパー。"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np


class MCLConfigError(ValueError):
    """入力形状や設定値の不整合。計算は続行しない。"""


class InvalidGradientRequest(RuntimeError):
    """ラベル・重み・最小損失入力への勾配要求。"""


def as_prediction_matrix(prediction: np.ndarray, index: int = 0) -> np.ndarray:
    """予測器出力を (N, C) 行列へ平坦化する。"""

    arr = np.asarray(prediction)
    if arr.ndim < 2:
        raise MCLConfigError(
            f"予測器 {index} の出力は (N, C, ...) 形状である必要があります: shape={arr.shape}"
        )
    num = int(arr.shape[0])
    if num == 0 or arr.size == 0:
        raise MCLConfigError(f"予測器 {index} の出力が空です: shape={arr.shape}")
    if not np.issubdtype(arr.dtype, np.number) or np.issubdtype(arr.dtype, np.complexfloating):
        raise MCLConfigError(f"予測器 {index} の出力は実数配列である必要があります: dtype={arr.dtype}")
    return arr.reshape(num, -1)


def stack_predictions(predictions: Sequence[np.ndarray]) -> List[np.ndarray]:
    """予測器ごとの出力を検証し、同一形状の (N, C) 行列リストとして返す。"""

    if isinstance(predictions, np.ndarray):
        raise MCLConfigError("予測器出力は配列のシーケンスとして渡してください")
    mats = [as_prediction_matrix(pred, idx) for idx, pred in enumerate(predictions)]
    if not mats:
        raise MCLConfigError("少なくとも 1 つの予測器出力が必要です")
    expected = mats[0].shape
    for idx, mat in enumerate(mats[1:], start=1):
        if mat.shape != expected:
            raise MCLConfigError(
                f"予測器 {idx} の形状 {mat.shape} が予測器 0 の形状 {expected} と一致しません"
            )
    return mats


def as_label_vector(labels: np.ndarray, num: int) -> np.ndarray:
    """ラベル入力を (N,) の int64 ベクトルへ変換する。"""

    arr = np.asarray(labels)
    if arr.ndim == 0:
        raise MCLConfigError("labels は (N,) または (N, 1, 1, 1) 形状である必要があります")
    if any(int(dim) != 1 for dim in arr.shape[1:]):
        raise MCLConfigError(
            f"labels の channels/height/width は 1 である必要があります: shape={arr.shape}"
        )
    flat = arr.reshape(arr.shape[0])
    if flat.shape[0] != num:
        raise MCLConfigError(f"labels の件数 {flat.shape[0]} が予測の件数 {num} と一致しません")
    if np.issubdtype(flat.dtype, np.integer):
        return flat.astype(np.int64)
    if not np.issubdtype(flat.dtype, np.floating):
        raise MCLConfigError(f"labels は数値配列である必要があります: dtype={flat.dtype}")
    if not np.all(np.isfinite(flat)) or not np.all(flat == np.round(flat)):
        raise MCLConfigError("labels は整数値である必要があります")
    return flat.astype(np.int64)


def check_label_range(
    labels: np.ndarray, class_count: int, ignore_label: Optional[int] = None
) -> None:
    """ラベルが [0, C) に収まっているか確認する。ignore_label は除外する。"""

    active = labels if ignore_label is None else labels[labels != ignore_label]
    if active.size == 0:
        return
    bad = (active < 0) | (active >= class_count)
    if np.any(bad):
        value = int(active[np.argmax(bad)])
        raise MCLConfigError(f"ラベル {value} がクラス数 {class_count} の範囲外です")


def gather_label_probs(
    mats: Sequence[np.ndarray], labels: np.ndarray, log_threshold: float
) -> np.ndarray:
    """各予測器の正解ラベル確率を下限値でクランプし (N, P) 行列として返す。"""

    rows = np.arange(labels.shape[0])
    columns = [
        np.maximum(mat[rows, labels].astype(np.float64), log_threshold) for mat in mats
    ]
    return np.stack(columns, axis=1)


def grad_dtype(mat: np.ndarray) -> np.dtype:
    """勾配バッファの dtype。浮動小数入力ならそれに合わせる。"""

    if np.issubdtype(mat.dtype, np.floating):
        return mat.dtype
    return np.dtype(np.float64)
