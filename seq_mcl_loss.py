"""段階的アンサンブル向けの逐次再重み付け損失。

各段は自分の予測器出力から -log(p) を計算し、前段から受け取った
累積最小損失と重要度重みを更新して次段へ渡す。先頭段は前段入力を持たず、
その場で初期化する。

先頭段の損失は平均 (N で割る) だが、後続段は前段重みによる加重和で
N では割らない。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from mcl_common import (
    InvalidGradientRequest,
    MCLConfigError,
    as_label_vector,
    as_prediction_matrix,
    check_label_range,
    gather_label_probs,
    grad_dtype,
)
from mcl_config import LOG_THRESHOLD, SeqMCLParam, validate_log_threshold

LOGGER = logging.getLogger(__name__)


@dataclass
class SeqStageOutput:
    """1 段分の出力（スカラー損失・正規化済み重み・累積最小損失）。"""

    loss: float
    weights: np.ndarray
    min_loss: np.ndarray


def _as_stage_vector(values: np.ndarray, num: int, name: str) -> np.ndarray:
    """前段から渡された (N,) / (N, 1, 1, 1) 入力を float64 ベクトルにする。"""

    arr = np.asarray(values)
    if arr.ndim == 0 or any(int(dim) != 1 for dim in arr.shape[1:]):
        raise MCLConfigError(f"{name} は (N,) または (N, 1, 1, 1) 形状である必要があります: shape={arr.shape}")
    flat = arr.reshape(arr.shape[0]).astype(np.float64)
    if flat.shape[0] != num:
        raise MCLConfigError(f"{name} の件数 {flat.shape[0]} が予測の件数 {num} と一致しません")
    return flat


def normalize_weights(raw: np.ndarray) -> np.ndarray:
    """重みの総和が 1 になるよう正規化する。総和が 0 以下なら一様重みにする。"""

    total = float(np.sum(raw))
    if not np.isfinite(total) or total <= 0.0:
        LOGGER.warning("重みの総和が %s のため一様重みで置き換えます", total)
        return np.full(raw.shape, 1.0 / raw.shape[0], dtype=np.float64)
    return raw / total


def sequential_forward(
    prediction: np.ndarray,
    labels: np.ndarray,
    sigma: float = 1.0,
    prev_weights: Optional[np.ndarray] = None,
    prev_min_loss: Optional[np.ndarray] = None,
    log_threshold: float = LOG_THRESHOLD,
) -> SeqStageOutput:
    """1 段分の順伝播。prev_* を省略すると先頭段として扱う。"""

    if (prev_weights is None) != (prev_min_loss is None):
        raise MCLConfigError("prev_weights と prev_min_loss は両方指定するか両方省略してください")
    SeqMCLParam(sigma=sigma).validate()
    threshold = validate_log_threshold(log_threshold)
    mat = as_prediction_matrix(prediction)
    num, class_count = mat.shape
    label_vec = as_label_vector(labels, num)
    check_label_range(label_vec, class_count)

    losses = -np.log(gather_label_probs([mat], label_vec, threshold)[:, 0])
    sigma_sq = float(sigma) * float(sigma)
    if prev_weights is None:
        min_loss = losses
        raw_weights = 1.0 - np.exp(-min_loss / sigma_sq)
        loss = float(losses.sum() / num)
    else:
        weights_in = _as_stage_vector(prev_weights, num, "prev_weights")
        min_in = _as_stage_vector(prev_min_loss, num, "prev_min_loss")
        min_loss = np.minimum(losses, min_in)
        raw_weights = weights_in * (1.0 - np.exp(-min_loss / sigma_sq))
        loss = float(np.sum(weights_in * losses))
    return SeqStageOutput(loss=loss, weights=normalize_weights(raw_weights), min_loss=min_loss)


def sequential_backward(
    prediction: np.ndarray,
    labels: np.ndarray,
    top_diff: float = 1.0,
    prev_weights: Optional[np.ndarray] = None,
    log_threshold: float = LOG_THRESHOLD,
) -> np.ndarray:
    """予測器出力に対する勾配。正解ラベル位置以外は 0。"""

    threshold = validate_log_threshold(log_threshold)
    mat = as_prediction_matrix(prediction)
    num = mat.shape[0]
    label_vec = as_label_vector(labels, num)
    upstream = np.asarray(top_diff, dtype=np.float64)
    if upstream.size != 1:
        raise MCLConfigError(f"top_diff はスカラーである必要があります: shape={upstream.shape}")
    scale = -float(upstream.reshape(-1)[0])

    rows = np.arange(num)
    probs = gather_label_probs([mat], label_vec, threshold)[:, 0]
    if prev_weights is None:
        values = scale / probs / num
    else:
        values = scale / probs * _as_stage_vector(prev_weights, num, "prev_weights")
    diff = np.zeros(mat.shape, dtype=grad_dtype(mat))
    diff[rows, label_vec] = values
    return diff.reshape(np.shape(prediction))


class SequentialMCLMultinomialLogisticLoss:
    """逐次再重み付け損失レイヤー。

    入力スロットは (予測, ラベル) または (予測, ラベル, 前段重み, 前段最小損失)。
    出力は (損失, 重み, 最小損失)。勾配は予測にのみ流れる。
    """

    def __init__(
        self, param: Optional[SeqMCLParam] = None, log_threshold: float = LOG_THRESHOLD
    ) -> None:
        self.param = param if param is not None else SeqMCLParam()
        self.param.validate()
        self.log_threshold = validate_log_threshold(log_threshold)
        self._prediction: Optional[np.ndarray] = None
        self._labels: Optional[np.ndarray] = None
        self._prev_weights: Optional[np.ndarray] = None
        self._output: Optional[SeqStageOutput] = None

    def reshape(
        self,
        prediction: np.ndarray,
        labels: np.ndarray,
        prev_weights: Optional[np.ndarray] = None,
        prev_min_loss: Optional[np.ndarray] = None,
    ) -> None:
        """入力スロット数と各形状を検証する。"""

        if (prev_weights is None) != (prev_min_loss is None):
            raise MCLConfigError("prev_weights と prev_min_loss は両方指定するか両方省略してください")
        mat = as_prediction_matrix(prediction)
        label_vec = as_label_vector(labels, mat.shape[0])
        check_label_range(label_vec, mat.shape[1])
        if prev_weights is not None:
            _as_stage_vector(prev_weights, mat.shape[0], "prev_weights")
            _as_stage_vector(prev_min_loss, mat.shape[0], "prev_min_loss")

    def forward(
        self,
        prediction: np.ndarray,
        labels: np.ndarray,
        prev_weights: Optional[np.ndarray] = None,
        prev_min_loss: Optional[np.ndarray] = None,
    ) -> SeqStageOutput:
        self._output = None
        self.reshape(prediction, labels, prev_weights, prev_min_loss)
        output = sequential_forward(
            prediction,
            labels,
            self.param.sigma,
            prev_weights,
            prev_min_loss,
            self.log_threshold,
        )
        self._prediction = np.asarray(prediction)
        self._labels = np.asarray(labels)
        self._prev_weights = None if prev_weights is None else np.asarray(prev_weights)
        self._output = output
        return output

    @property
    def is_chained(self) -> bool:
        return self._prev_weights is not None

    def backward(
        self, top_diff: float = 1.0, propagate_down: Optional[Sequence[bool]] = None
    ) -> Optional[np.ndarray]:
        """予測に対する勾配を返す。propagate_down[0] が False なら None。"""

        if self._output is None or self._prediction is None or self._labels is None:
            raise RuntimeError("forward を実行する前に backward が呼ばれました")
        slots = 4 if self.is_chained else 2
        flags = [True] + [False] * (slots - 1) if propagate_down is None else list(propagate_down)
        if len(flags) != slots:
            raise MCLConfigError(f"propagate_down の長さは {slots} である必要があります: {len(flags)}")
        if flags[1]:
            raise InvalidGradientRequest(
                "SequentialMCLMultinomialLogisticLoss Layer cannot backpropagate to label inputs."
            )
        if any(flags[2:]):
            raise InvalidGradientRequest(
                "SequentialMCLMultinomialLogisticLoss Layer cannot backpropagate to weight or min_loss inputs."
            )
        if not flags[0]:
            return None
        return sequential_backward(
            self._prediction,
            self._labels,
            top_diff,
            self._prev_weights,
            self.log_threshold,
        )

    @property
    def output(self) -> SeqStageOutput:
        if self._output is None:
            raise RuntimeError("forward を実行する前に出力は参照できません")
        return self._output


class SequentialMCLChain:
    """複数段の逐次損失を固定順で連結して実行する。"""

    def __init__(
        self, param: Optional[SeqMCLParam] = None, log_threshold: float = LOG_THRESHOLD
    ) -> None:
        self.param = param if param is not None else SeqMCLParam()
        self.param.validate()
        self.log_threshold = validate_log_threshold(log_threshold)
        self.stages: List[SequentialMCLMultinomialLogisticLoss] = []

    def forward(
        self, stage_predictions: Sequence[np.ndarray], labels: np.ndarray
    ) -> List[SeqStageOutput]:
        """各段を順に実行し、段ごとの出力を返す。"""

        if len(stage_predictions) == 0:
            raise MCLConfigError("少なくとも 1 段分の予測が必要です")
        self.stages = []
        outputs: List[SeqStageOutput] = []
        prev: Optional[SeqStageOutput] = None
        for idx, prediction in enumerate(stage_predictions):
            layer = SequentialMCLMultinomialLogisticLoss(self.param, self.log_threshold)
            if prev is None:
                out = layer.forward(prediction, labels)
            else:
                out = layer.forward(prediction, labels, prev.weights, prev.min_loss)
            LOGGER.debug(
                "stage %d: loss=%.6f min_loss_mean=%.6f max_weight=%.6f",
                idx,
                out.loss,
                float(np.mean(out.min_loss)),
                float(np.max(out.weights)),
            )
            self.stages.append(layer)
            outputs.append(out)
            prev = out
        return outputs

    def backward(self, top_diffs: Optional[Sequence[float]] = None) -> List[np.ndarray]:
        """段ごとの予測勾配を返す。top_diffs 省略時は全段 1.0。"""

        if not self.stages:
            raise RuntimeError("forward を実行する前に backward が呼ばれました")
        diffs = [1.0] * len(self.stages) if top_diffs is None else list(top_diffs)
        if len(diffs) != len(self.stages):
            raise MCLConfigError(
                f"top_diffs の長さ {len(diffs)} が段数 {len(self.stages)} と一致しません"
            )
        return [layer.backward(diff) for layer, diff in zip(self.stages, diffs)]


def run_sequence(
    stage_predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    sigma: float = 1.0,
    log_threshold: float = LOG_THRESHOLD,
) -> List[SeqStageOutput]:
    """SequentialMCLChain の順伝播だけを行う簡易関数。"""

    chain = SequentialMCLChain(SeqMCLParam(sigma=sigma), log_threshold)
    return chain.forward(stage_predictions, labels)
