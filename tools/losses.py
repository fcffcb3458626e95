"""MCL 系損失の PyTorch ラッパー。

計算本体は NumPy 実装 (mcl_loss / seq_mcl_loss) に委譲し、結果を入力と同じ
デバイス・dtype のテンソルで返す。
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mcl_common import InvalidGradientRequest, MCLConfigError
from mcl_config import LOG_THRESHOLD, MCLParam, SeqMCLParam
from mcl_loss import MCLAssignment, MCLMultinomialLogisticLoss
from seq_mcl_loss import SequentialMCLMultinomialLogisticLoss


def _to_numpy(tensor: torch.Tensor) -> np.ndarray:
    return tensor.detach().cpu().numpy()


def _like(array: np.ndarray, ref: torch.Tensor) -> torch.Tensor:
    """NumPy 配列を ref と同じデバイス・dtype のテンソルへ変換する。"""

    return torch.from_numpy(np.ascontiguousarray(array)).to(device=ref.device, dtype=ref.dtype)


class _MCLFunction(torch.autograd.Function):
    """勝者割り当て損失の autograd 関数。入力は (labels, layer, *predictions)。"""

    @staticmethod
    def forward(ctx, labels: torch.Tensor, layer: MCLMultinomialLogisticLoss, *predictions: torch.Tensor) -> torch.Tensor:
        losses = layer.forward([_to_numpy(pred) for pred in predictions], _to_numpy(labels))
        ctx.layer = layer
        ctx.refs = [(pred.device, pred.dtype) for pred in predictions]
        return torch.from_numpy(losses).to(device=predictions[0].device, dtype=predictions[0].dtype)

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor) -> Tuple[Optional[torch.Tensor], ...]:
        if ctx.needs_input_grad[0]:
            raise InvalidGradientRequest("MCLLoss cannot backpropagate to label inputs.")
        flags = list(ctx.needs_input_grad[2:]) + [False]
        grads = ctx.layer.backward(_to_numpy(grad_output).astype(np.float64), flags)
        out: List[Optional[torch.Tensor]] = []
        for grad, (device, dtype) in zip(grads, ctx.refs):
            if grad is None:
                out.append(None)
            else:
                out.append(torch.from_numpy(grad).to(device=device, dtype=dtype))
        return (None, None, *out)


class _SeqMCLFunction(torch.autograd.Function):
    """逐次再重み付け損失の autograd 関数。"""

    @staticmethod
    def forward(
        ctx,
        prediction: torch.Tensor,
        labels: torch.Tensor,
        layer: SequentialMCLMultinomialLogisticLoss,
        prev_weights: Optional[torch.Tensor],
        prev_min_loss: Optional[torch.Tensor],
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        out = layer.forward(
            _to_numpy(prediction),
            _to_numpy(labels),
            None if prev_weights is None else _to_numpy(prev_weights),
            None if prev_min_loss is None else _to_numpy(prev_min_loss),
        )
        ctx.layer = layer
        ctx.ref = (prediction.device, prediction.dtype)
        loss = torch.tensor(out.loss, device=prediction.device, dtype=prediction.dtype)
        weights = _like(out.weights, prediction)
        min_loss = _like(out.min_loss, prediction)
        ctx.mark_non_differentiable(weights, min_loss)
        return loss, weights, min_loss

    @staticmethod
    def backward(ctx, grad_loss: torch.Tensor, grad_weights, grad_min_loss):
        if ctx.needs_input_grad[1]:
            raise InvalidGradientRequest("SequentialMCLLoss cannot backpropagate to label inputs.")
        if ctx.needs_input_grad[3] or ctx.needs_input_grad[4]:
            raise InvalidGradientRequest(
                "SequentialMCLLoss cannot backpropagate to weight or min_loss inputs."
            )
        if not ctx.needs_input_grad[0]:
            return None, None, None, None, None
        grad = ctx.layer.backward(float(grad_loss.detach().cpu().item()))
        device, dtype = ctx.ref
        return torch.from_numpy(grad).to(device=device, dtype=dtype), None, None, None, None


class MCLLoss(nn.Module):
    """アンサンブル予測器向けの勝者割り当て損失。

    戻り値は予測器ごとの平均損失 (P,)。勝者は正解ラベルの対数確率が
    小さい順に hard_k 個選ばれる。
    """

    def __init__(self, hard_k: int = 1, log_threshold: float = LOG_THRESHOLD) -> None:
        super().__init__()
        self.param = MCLParam(hard_k=int(hard_k))
        self.param.validate()
        self.log_threshold = float(log_threshold)
        self.last_layer: Optional[MCLMultinomialLogisticLoss] = None

    def forward(self, predictions: Sequence[torch.Tensor], labels: torch.Tensor) -> torch.Tensor:
        """確率テンソル列と正解ラベルから予測器ごとの損失を算出する。"""

        if len(predictions) == 0:
            raise MCLConfigError("少なくとも 1 つの予測器出力が必要です")
        layer = MCLMultinomialLogisticLoss(self.param, self.log_threshold)
        losses = _MCLFunction.apply(labels, layer, *predictions)
        self.last_layer = layer
        return losses

    @property
    def assignment(self) -> MCLAssignment:
        """直近の forward で確定した割り当て。"""

        if self.last_layer is None:
            raise RuntimeError("forward を実行する前に割り当ては参照できません")
        return self.last_layer.assignment


class SequentialMCLLoss(nn.Module):
    """逐次再重み付け損失。(損失, 重み, 累積最小損失) を返す。"""

    def __init__(self, sigma: float = 1.0, log_threshold: float = LOG_THRESHOLD) -> None:
        super().__init__()
        self.param = SeqMCLParam(sigma=float(sigma))
        self.param.validate()
        self.log_threshold = float(log_threshold)

    def forward(
        self,
        prediction: torch.Tensor,
        labels: torch.Tensor,
        prev_weights: Optional[torch.Tensor] = None,
        prev_min_loss: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        layer = SequentialMCLMultinomialLogisticLoss(self.param, self.log_threshold)
        return _SeqMCLFunction.apply(prediction, labels, layer, prev_weights, prev_min_loss)
