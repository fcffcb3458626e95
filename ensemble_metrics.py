"""アンサンブル評価用の精度指標。

- ensemble accuracy: いずれかの予測器が正解ラベルを上位 top_k に挙げた割合
- oracle accuracy: 正解ラベルへの確率が最も高い予測器が、そのラベルを
  上位 top_k に挙げた割合
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from mcl_common import (
    as_label_vector,
    check_label_range,
    gather_label_probs,
    stack_predictions,
)
from mcl_config import LOG_THRESHOLD, AccuracyParam, validate_log_threshold

LOGGER = logging.getLogger(__name__)


def label_ranks(mat: np.ndarray, labels: np.ndarray, log_threshold: float) -> np.ndarray:
    """各行で正解ラベルが何番目に高い確率か (0 始まり) を返す。

    同確率はクラス番号の小さい方を上位とする。
    """

    probs = np.maximum(mat.astype(np.float64), log_threshold)
    rows = np.arange(labels.shape[0])
    target = probs[rows, labels][:, None]
    cols = np.arange(probs.shape[1])[None, :]
    higher = np.sum(probs > target, axis=1)
    tied_before = np.sum((probs == target) & (cols < labels[:, None]), axis=1)
    return higher + tied_before


def _prepare(
    predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    param: AccuracyParam,
    log_threshold: float,
) -> Tuple[List[np.ndarray], np.ndarray, float]:
    mats = stack_predictions(predictions)
    num, class_count = mats[0].shape
    param.validate(class_count)
    threshold = validate_log_threshold(log_threshold)
    label_vec = as_label_vector(labels, num)
    check_label_range(label_vec, class_count, param.ignore_label)
    if param.ignore_label is None:
        keep = np.ones(num, dtype=bool)
    else:
        keep = label_vec != param.ignore_label
    mats = [mat[keep] for mat in mats]
    return mats, label_vec[keep], threshold


def ensemble_accuracy(
    predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    top_k: int = 1,
    ignore_label: Optional[int] = None,
    log_threshold: float = LOG_THRESHOLD,
) -> float:
    """いずれかの予測器が正解した割合を返す。"""

    param = AccuracyParam(top_k=top_k, ignore_label=ignore_label)
    mats, label_vec, threshold = _prepare(predictions, labels, param, log_threshold)
    if label_vec.shape[0] == 0:
        LOGGER.warning("有効なサンプルがないため ensemble accuracy を 0 とします")
        return 0.0
    hit = np.zeros(label_vec.shape[0], dtype=bool)
    for mat in mats:
        hit |= label_ranks(mat, label_vec, threshold) < param.top_k
    return float(np.mean(hit))


def oracle_accuracy(
    predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    top_k: int = 1,
    ignore_label: Optional[int] = None,
    log_threshold: float = LOG_THRESHOLD,
) -> float:
    """正解ラベルに最も自信のある予測器が、そのラベルを上位に挙げた割合を返す。"""

    param = AccuracyParam(top_k=top_k, ignore_label=ignore_label)
    mats, label_vec, threshold = _prepare(predictions, labels, param, log_threshold)
    num = label_vec.shape[0]
    if num == 0:
        LOGGER.warning("有効なサンプルがないため oracle accuracy を 0 とします")
        return 0.0
    # 同確率なら番号の小さい予測器を採用する。
    chosen = np.argmax(gather_label_probs(mats, label_vec, threshold), axis=1)
    ranks = np.stack([label_ranks(mat, label_vec, threshold) for mat in mats], axis=1)
    chosen_rank = ranks[np.arange(num), chosen]
    return float(np.mean(chosen_rank < param.top_k))


class EnsembleAccuracy:
    """ensemble_accuracy をレイヤー形式で扱うラッパー。"""

    def __init__(self, param: Optional[AccuracyParam] = None, log_threshold: float = LOG_THRESHOLD) -> None:
        self.param = param if param is not None else AccuracyParam()
        self.param.validate()
        self.log_threshold = validate_log_threshold(log_threshold)

    def forward(self, predictions: Sequence[np.ndarray], labels: np.ndarray) -> float:
        return ensemble_accuracy(
            predictions, labels, self.param.top_k, self.param.ignore_label, self.log_threshold
        )


class OracleAccuracy:
    """oracle_accuracy をレイヤー形式で扱うラッパー。"""

    def __init__(self, param: Optional[AccuracyParam] = None, log_threshold: float = LOG_THRESHOLD) -> None:
        self.param = param if param is not None else AccuracyParam()
        self.param.validate()
        self.log_threshold = validate_log_threshold(log_threshold)

    def forward(self, predictions: Sequence[np.ndarray], labels: np.ndarray) -> float:
        return oracle_accuracy(
            predictions, labels, self.param.top_k, self.param.ignore_label, self.log_threshold
        )
