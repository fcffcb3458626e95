"""アンサンブル予測器向け Multiple Choice Learning 損失の実装モジュール。

各サンプルについて正解ラベルの対数確率が小さい順に k 個の予測器を
「勝者」として割り当て、予測器ごとの平均損失を求める。逆伝播では勝者と
なった (サンプル, 正解ラベル) 位置にだけ勾配を書き込む。

注意: 勝者は対数確率の昇順、つまり最も自信の低い予測器から選ばれる。
一般的な MCL（最も正しい予測器に報酬を与える）とは向きが逆である。
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
    check_label_range,
    gather_label_probs,
    grad_dtype,
    stack_predictions,
)
from mcl_config import LOG_THRESHOLD, MCLParam, validate_log_threshold

LOGGER = logging.getLogger(__name__)


@dataclass
class MCLAssignment:
    """順伝播で確定した勝者割り当てと予測器ごとの集計値。"""

    best_pred: np.ndarray
    assign_counts: np.ndarray
    losses: np.ndarray
    total_loss: float

    @property
    def hard_k(self) -> int:
        return int(self.best_pred.shape[1])

    @property
    def n_pred(self) -> int:
        return int(self.assign_counts.shape[0])

    def winners_of(self, pred_index: int) -> np.ndarray:
        """予測器 pred_index が勝者となったサンプル番号を昇順で返す。"""

        return np.flatnonzero(np.any(self.best_pred == pred_index, axis=1))


def select_winners(scores: np.ndarray, hard_k: int) -> np.ndarray:
    """(N, P) スコアから各行の最小 k 件の列番号を昇順に返す。

    同点は列番号の小さい方を優先する（安定ソート）。
    """

    if scores.ndim != 2:
        raise MCLConfigError("scores は (N, P) 形状である必要があります")
    if hard_k < 1 or hard_k > scores.shape[1]:
        raise MCLConfigError(f"hard_k ({hard_k}) が予測器数 ({scores.shape[1]}) と矛盾しています")
    order = np.argsort(scores, axis=1, kind="stable")
    return order[:, :hard_k]


def aggregate_assignments(
    predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    hard_k: int = 1,
    log_threshold: float = LOG_THRESHOLD,
) -> MCLAssignment:
    """勝者を選んで予測器ごとの損失和・件数を集計し、平均損失へ確定する。"""

    mats = stack_predictions(predictions)
    num, class_count = mats[0].shape
    n_pred = len(mats)
    MCLParam(hard_k=int(hard_k)).validate(n_pred)
    threshold = validate_log_threshold(log_threshold)
    label_vec = as_label_vector(labels, num)
    check_label_range(label_vec, class_count)

    scores = np.log(gather_label_probs(mats, label_vec, threshold))
    best = select_winners(scores, int(hard_k))
    picked = np.take_along_axis(scores, best, axis=1)

    # 同一予測器への加算が衝突するため、選択後にまとめて集約する。
    flat_best = best.ravel()
    loss_sum = np.bincount(flat_best, weights=-picked.ravel(), minlength=n_pred)
    counts = np.bincount(flat_best, minlength=n_pred).astype(np.int64)
    losses = np.zeros(n_pred, dtype=np.float64)
    assigned = counts > 0
    losses[assigned] = loss_sum[assigned] / counts[assigned]
    for idx in np.flatnonzero(~assigned):
        LOGGER.debug("予測器 %d には勝者割り当てがありません", int(idx))
    total_loss = float(loss_sum.sum() / num)
    return MCLAssignment(
        best_pred=best.astype(np.int64),
        assign_counts=counts,
        losses=losses,
        total_loss=total_loss,
    )


def route_gradients(
    assignment: MCLAssignment,
    predictions: Sequence[np.ndarray],
    labels: np.ndarray,
    top_diff: Optional[np.ndarray] = None,
    log_threshold: float = LOG_THRESHOLD,
) -> List[np.ndarray]:
    """勝者位置にのみ勾配を書き込んだ予測器ごとの勾配バッファを返す。

    scale[j] = -top_diff[j] / count[j] とし、勝者サンプル i の正解ラベル位置へ
    scale[j] / max(p, 下限値) を書き込む。top_diff 省略時は順伝播の損失を使う。
    top_diff が順伝播の平均損失の場合、count による割り算は 2 回目になる。
    """

    mats = stack_predictions(predictions)
    num = mats[0].shape[0]
    if len(mats) != assignment.n_pred or assignment.best_pred.shape[0] != num:
        raise MCLConfigError("逆伝播の入力形状が順伝播時と一致しません")
    label_vec = as_label_vector(labels, num)
    threshold = validate_log_threshold(log_threshold)
    if top_diff is None:
        upstream = assignment.losses
    else:
        upstream = np.asarray(top_diff, dtype=np.float64).reshape(-1)
        if upstream.shape[0] != assignment.n_pred:
            raise MCLConfigError(
                f"top_diff の長さ {upstream.shape[0]} が予測器数 {assignment.n_pred} と一致しません"
            )

    grads: List[np.ndarray] = []
    for j, (mat, pred) in enumerate(zip(mats, predictions)):
        diff = np.zeros(mat.shape, dtype=grad_dtype(mat))
        count = int(assignment.assign_counts[j])
        if count > 0:
            scale = -float(upstream[j]) / count
            rows = assignment.winners_of(j)
            cols = label_vec[rows]
            probs = np.maximum(mat[rows, cols].astype(np.float64), threshold)
            diff[rows, cols] = scale / probs
        grads.append(diff.reshape(np.shape(pred)))
    return grads


class MCLMultinomialLogisticLoss:
    """勝者割り当て付き多項ロジスティック損失レイヤー。

    forward で割り当てと集計を毎回作り直し、backward はその結果を読むだけ。
    入力の最後のスロットがラベルという慣習に合わせ、propagate_down は
    予測器 P 個 + ラベル 1 個の長さで受け取る。
    """

    def __init__(
        self, param: Optional[MCLParam] = None, log_threshold: float = LOG_THRESHOLD
    ) -> None:
        self.param = param if param is not None else MCLParam()
        self.param.validate()
        self.log_threshold = validate_log_threshold(log_threshold)
        self._assignment: Optional[MCLAssignment] = None
        self._predictions: Optional[List[np.ndarray]] = None
        self._labels: Optional[np.ndarray] = None

    def reshape(self, predictions: Sequence[np.ndarray], labels: np.ndarray) -> None:
        """入力形状と hard_k の整合性を検証する。"""

        mats = stack_predictions(predictions)
        self.param.validate(len(mats))
        label_vec = as_label_vector(labels, mats[0].shape[0])
        check_label_range(label_vec, mats[0].shape[1])

    def forward(self, predictions: Sequence[np.ndarray], labels: np.ndarray) -> np.ndarray:
        """予測器ごとの平均損失 (P,) を返す。"""

        self._assignment = None
        self._predictions = None
        self._labels = None
        self.reshape(predictions, labels)
        assignment = aggregate_assignments(
            predictions, labels, self.param.hard_k, self.log_threshold
        )
        self._assignment = assignment
        self._predictions = [np.asarray(pred) for pred in predictions]
        self._labels = np.asarray(labels)
        LOGGER.debug(
            "MCL forward: N=%d P=%d k=%d total_loss=%.6f counts=%s",
            assignment.best_pred.shape[0],
            assignment.n_pred,
            assignment.hard_k,
            assignment.total_loss,
            assignment.assign_counts.tolist(),
        )
        return assignment.losses.copy()

    def backward(
        self,
        top_diff: Optional[np.ndarray] = None,
        propagate_down: Optional[Sequence[bool]] = None,
    ) -> List[Optional[np.ndarray]]:
        """予測器ごとの勾配を返す。propagate_down が False の予測器は None。"""

        if self._assignment is None or self._predictions is None or self._labels is None:
            raise RuntimeError("forward を実行する前に backward が呼ばれました")
        n_pred = self._assignment.n_pred
        flags = [True] * n_pred + [False] if propagate_down is None else list(propagate_down)
        if len(flags) != n_pred + 1:
            raise MCLConfigError(
                f"propagate_down の長さは {n_pred + 1} である必要があります: {len(flags)}"
            )
        if flags[n_pred]:
            raise InvalidGradientRequest(
                "MCLMultinomialLogisticLoss Layer cannot backpropagate to label inputs."
            )
        grads = route_gradients(
            self._assignment, self._predictions, self._labels, top_diff, self.log_threshold
        )
        return [grad if flag else None for grad, flag in zip(grads, flags[:n_pred])]

    @property
    def assignment(self) -> MCLAssignment:
        if self._assignment is None:
            raise RuntimeError("forward を実行する前に割り当ては参照できません")
        return self._assignment

    @property
    def best_pred(self) -> np.ndarray:
        return self.assignment.best_pred

    @property
    def assign_counts(self) -> np.ndarray:
        return self.assignment.assign_counts

    @property
    def total_loss(self) -> float:
        return self.assignment.total_loss
