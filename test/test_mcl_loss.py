"""勝者割り当て損失と勾配ルーティングのテスト。"""

from __future__ import annotations

import math
import sys
import unittest
from pathlib import Path

import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mcl_common import InvalidGradientRequest, MCLConfigError
from mcl_config import LOG_THRESHOLD, MCLParam
from mcl_loss import (
    MCLMultinomialLogisticLoss,
    aggregate_assignments,
    route_gradients,
    select_winners,
)


def _two_by_two():
    pred0 = np.array([[0.9, 0.1], [0.2, 0.8]], dtype=np.float64)
    pred1 = np.array([[0.4, 0.6], [0.7, 0.3]], dtype=np.float64)
    labels = np.array([0, 1], dtype=np.int64)
    return [pred0, pred1], labels


def _random_inputs(seed: int, num: int = 9, n_pred: int = 4, classes: int = 5):
    rng = np.random.default_rng(seed)
    preds = []
    for _ in range(n_pred):
        raw = rng.random((num, classes)) + 1e-3
        preds.append(raw / raw.sum(axis=1, keepdims=True))
    labels = rng.integers(0, classes, size=num)
    return preds, labels


class MCLForwardTest(unittest.TestCase):
    """順伝播（割り当てと集計）の検証。"""

    def test_two_by_two_picks_lowest_log_prob(self) -> None:
        """正解ラベル確率が最小の予測器が勝者になる。"""

        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        losses = layer.forward(preds, labels)
        # 例 0: 0.9 vs 0.4 -> 予測器 1、例 1: 0.8 vs 0.3 -> 予測器 1
        np.testing.assert_array_equal(layer.best_pred, [[1], [1]])
        np.testing.assert_array_equal(layer.assign_counts, [0, 2])
        expected = (-math.log(0.4) - math.log(0.3)) / 2.0
        self.assertAlmostEqual(losses[0], 0.0)
        self.assertAlmostEqual(losses[1], expected)
        self.assertAlmostEqual(layer.total_loss, expected)

    def test_counts_sum_to_num_times_k(self) -> None:
        """割り当て件数の総和が N * k になる。"""

        for seed in range(3):
            preds, labels = _random_inputs(seed)
            for k in range(1, len(preds) + 1):
                assignment = aggregate_assignments(preds, labels, hard_k=k)
                self.assertEqual(int(assignment.assign_counts.sum()), labels.shape[0] * k)
                self.assertEqual(assignment.best_pred.shape, (labels.shape[0], k))

    def test_topk_winners_are_distinct_and_ordered(self) -> None:
        """top-k の勝者は互いに異なり、スコア昇順に並ぶ。"""

        preds, labels = _random_inputs(7)
        assignment = aggregate_assignments(preds, labels, hard_k=3)
        rows = np.arange(labels.shape[0])
        scores = np.stack([np.log(p[rows, labels]) for p in preds], axis=1)
        for i, winners in enumerate(assignment.best_pred):
            self.assertEqual(len(set(winners.tolist())), 3)
            picked = scores[i, winners]
            self.assertTrue(np.all(np.diff(picked) >= 0.0))
            others = np.setdiff1d(np.arange(len(preds)), winners)
            self.assertTrue(np.all(scores[i, others] >= picked[-1]))

    def test_all_predictors_win_when_k_equals_p(self) -> None:
        preds, labels = _two_by_two()
        assignment = aggregate_assignments(preds, labels, hard_k=2)
        np.testing.assert_array_equal(assignment.assign_counts, [2, 2])
        self.assertAlmostEqual(
            assignment.losses[0], (-math.log(0.9) - math.log(0.8)) / 2.0
        )

    def test_ties_prefer_lower_index(self) -> None:
        """同点時は番号の小さい予測器が先に選ばれる。"""

        scores = np.array([[0.5, 0.5, 0.5], [0.2, 0.1, 0.1]])
        np.testing.assert_array_equal(select_winners(scores, 2), [[0, 1], [1, 2]])

    def test_probabilities_are_floored(self) -> None:
        """確率 0 でも下限値により有限の損失になる。"""

        preds = [np.array([[0.0, 1.0]]), np.array([[0.5, 0.5]])]
        assignment = aggregate_assignments(preds, np.array([0]))
        self.assertEqual(int(assignment.best_pred[0, 0]), 0)
        self.assertAlmostEqual(assignment.losses[0], -math.log(LOG_THRESHOLD))
        self.assertTrue(np.all(np.isfinite(assignment.losses)))

    def test_forward_is_deterministic_and_resets(self) -> None:
        """同一入力の再実行で同じ結果になり、前回の集計が残らない。"""

        preds, labels = _random_inputs(3)
        layer = MCLMultinomialLogisticLoss(MCLParam(hard_k=2))
        first = layer.forward(preds, labels)
        best_first = layer.best_pred.copy()
        second = layer.forward(preds, labels)
        np.testing.assert_array_equal(first, second)
        np.testing.assert_array_equal(best_first, layer.best_pred)
        self.assertEqual(int(layer.assign_counts.sum()), labels.shape[0] * 2)

    def test_accepts_blob_shaped_inputs(self) -> None:
        """(N, C, 1, 1) の予測と (N, 1, 1, 1) のラベルを受け付ける。"""

        preds, labels = _two_by_two()
        blob_preds = [p.reshape(2, 2, 1, 1) for p in preds]
        blob_labels = labels.astype(np.float32).reshape(2, 1, 1, 1)
        layer = MCLMultinomialLogisticLoss()
        losses = layer.forward(blob_preds, blob_labels)
        grads = layer.backward()
        self.assertEqual(grads[1].shape, (2, 2, 1, 1))
        np.testing.assert_allclose(losses, MCLMultinomialLogisticLoss().forward(preds, labels))


class MCLConfigErrorTest(unittest.TestCase):
    """設定・形状エラーの検証。"""

    def test_hard_k_larger_than_predictors(self) -> None:
        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss(MCLParam(hard_k=3))
        with self.assertRaises(MCLConfigError):
            layer.forward(preds, labels)

    def test_hard_k_must_be_positive(self) -> None:
        with self.assertRaises(MCLConfigError):
            MCLMultinomialLogisticLoss(MCLParam(hard_k=0))

    def test_shape_mismatch(self) -> None:
        preds, labels = _two_by_two()
        preds[1] = np.ones((2, 3)) / 3.0
        with self.assertRaises(MCLConfigError):
            aggregate_assignments(preds, labels)

    def test_label_count_mismatch(self) -> None:
        preds, _ = _two_by_two()
        with self.assertRaises(MCLConfigError):
            aggregate_assignments(preds, np.array([0, 1, 1]))

    def test_label_out_of_range(self) -> None:
        preds, _ = _two_by_two()
        with self.assertRaises(MCLConfigError):
            aggregate_assignments(preds, np.array([0, 2]))

    def test_non_integer_label(self) -> None:
        preds, _ = _two_by_two()
        with self.assertRaises(MCLConfigError):
            aggregate_assignments(preds, np.array([0.0, 0.5]))

    def test_label_with_extra_channels(self) -> None:
        preds, _ = _two_by_two()
        with self.assertRaises(MCLConfigError):
            aggregate_assignments(preds, np.zeros((2, 2), dtype=np.int64))

    def test_no_predictors(self) -> None:
        with self.assertRaises(MCLConfigError):
            aggregate_assignments([], np.array([0]))


class MCLBackwardTest(unittest.TestCase):
    """逆伝播（勾配ルーティング）の検証。"""

    def test_two_by_two_gradient_values(self) -> None:
        """scale = -loss / count を勝者の正解位置にだけ書き込む。"""

        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        losses = layer.forward(preds, labels)
        grads = layer.backward()
        np.testing.assert_array_equal(grads[0], np.zeros((2, 2)))
        scale = -losses[1] / 2.0
        expected = np.array([[scale / 0.4, 0.0], [0.0, scale / 0.3]])
        np.testing.assert_allclose(grads[1], expected)

    def test_explicit_top_diff(self) -> None:
        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        layer.forward(preds, labels)
        grads = layer.backward(np.array([1.0, 1.0]))
        np.testing.assert_allclose(grads[1], [[-0.5 / 0.4, 0.0], [0.0, -0.5 / 0.3]])

    def test_gradient_sparsity(self) -> None:
        """勾配は勝者サンプルの正解ラベル位置以外で厳密に 0。"""

        preds, labels = _random_inputs(11, num=12, n_pred=5, classes=4)
        layer = MCLMultinomialLogisticLoss(MCLParam(hard_k=2))
        layer.forward(preds, labels)
        grads = layer.backward(np.ones(5))
        for j, grad in enumerate(grads):
            mask = np.zeros_like(grad, dtype=bool)
            winners = np.flatnonzero(np.any(layer.best_pred == j, axis=1))
            mask[winners, labels[winners]] = True
            self.assertTrue(np.all(grad[~mask] == 0.0))
            self.assertTrue(np.all(grad[mask] < 0.0))
            if layer.assign_counts[j] == 0:
                self.assertFalse(np.any(grad))

    def test_zero_count_predictor_has_zero_gradient(self) -> None:
        preds, labels = _two_by_two()
        assignment = aggregate_assignments(preds, labels)
        grads = route_gradients(assignment, preds, labels, np.array([5.0, 1.0]))
        self.assertEqual(int(assignment.assign_counts[0]), 0)
        self.assertFalse(np.any(grads[0]))

    def test_backward_before_forward(self) -> None:
        with self.assertRaises(RuntimeError):
            MCLMultinomialLogisticLoss().backward()

    def test_label_gradient_request_is_fatal(self) -> None:
        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        layer.forward(preds, labels)
        with self.assertRaises(InvalidGradientRequest):
            layer.backward(propagate_down=[True, True, True])

    def test_propagate_down_false_returns_none(self) -> None:
        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        layer.forward(preds, labels)
        grads = layer.backward(propagate_down=[False, True, False])
        self.assertIsNone(grads[0])
        self.assertIsNotNone(grads[1])

    def test_top_diff_length_mismatch(self) -> None:
        preds, labels = _two_by_two()
        layer = MCLMultinomialLogisticLoss()
        layer.forward(preds, labels)
        with self.assertRaises(MCLConfigError):
            layer.backward(np.ones(3))

    def test_gradient_dtype_follows_input(self) -> None:
        preds, labels = _two_by_two()
        preds32 = [p.astype(np.float32) for p in preds]
        layer = MCLMultinomialLogisticLoss()
        layer.forward(preds32, labels)
        grads = layer.backward()
        self.assertEqual(grads[1].dtype, np.float32)


if __name__ == "__main__":
    unittest.main()
