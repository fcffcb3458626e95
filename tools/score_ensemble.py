#!/usr/bin/env python3
"""保存済みアンサンブル予測を MCL 損失・精度指標で採点する CLI。

入力:
  --predictions a.npy b.npy ... --labels y.npy
      予測器ごとの確率 float [N, C] とラベル int [N]
  --npz bundle.npz
      pred0..predP-1 と labels を含むアーカイブ

出力 (--out):
  勝者割り当て損失・割り当て件数・勾配ノルム、ensemble / oracle accuracy、
  予測器を段とみなした逐次再重み付け損失の各段統計を JSON で書き出す。

例:
  python tools/score_ensemble.py --npz runs/val_probs.npz --hard-k 2 --out runs/score.json
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ensemble_metrics import EnsembleAccuracy, OracleAccuracy
from io_utils import describe_input, load_prediction_bundle, load_prediction_files, now_iso, save_json
from mcl_common import InvalidGradientRequest, MCLConfigError, as_label_vector, stack_predictions
from mcl_config import LayerConfig, load_layer_config, validate_log_threshold
from mcl_loss import MCLMultinomialLogisticLoss
from seq_mcl_loss import SeqStageOutput, SequentialMCLMultinomialLogisticLoss

LOGGER = logging.getLogger(__name__)

# 進捗表示の有効 / 無効を CLI から切り替えるためのフラグ。
ENABLE_PROGRESS = True


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI 引数を構文解析する。"""

    parser = argparse.ArgumentParser(description="MCL アンサンブル採点ツール")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--predictions", type=Path, nargs="+", help="予測器ごとの確率 .npy (N, C)")
    source.add_argument("--npz", type=Path, help="pred0.. と labels を含む .npz")
    parser.add_argument("--labels", type=Path, help="ラベル .npy (N,)。--predictions 使用時は必須")
    parser.add_argument("--config", type=Path, help="レイヤー設定 JSON")
    parser.add_argument("--hard-k", type=int, default=None, help="1 サンプルあたりの勝者数")
    parser.add_argument("--sigma", type=float, default=None, help="逐次再重み付けの sigma")
    parser.add_argument("--top-k", type=int, default=None, help="精度指標の top-k")
    parser.add_argument("--ignore-label", type=int, default=None, help="精度指標で無視するラベル")
    parser.add_argument("--log-threshold", type=float, default=None, help="確率の下限値")
    parser.add_argument("--mode", choices=["mcl", "seq", "all"], default="all", help="採点対象")
    parser.add_argument("--out", type=Path, default=None, help="レポート JSON の出力先")
    parser.add_argument("--progress", dest="progress", action="store_true", help="進捗バーを表示")
    parser.add_argument("--no-progress", dest="progress", action="store_false", help="進捗バーを無効化")
    parser.add_argument("--verbose", action="store_true", help="DEBUG ログを表示")
    parser.set_defaults(progress=True)
    args = parser.parse_args(argv)
    if args.predictions is not None and args.labels is None:
        parser.error("--predictions を使う場合は --labels も指定してください")
    return args


def build_config(args: argparse.Namespace) -> LayerConfig:
    """設定ファイルとコマンドライン指定をマージする。"""

    config = load_layer_config(args.config) if args.config is not None else LayerConfig()
    if args.hard_k is not None:
        config.mcl.hard_k = args.hard_k
    if args.sigma is not None:
        config.seq_mcl.sigma = args.sigma
    if args.top_k is not None:
        config.accuracy.top_k = args.top_k
    if args.ignore_label is not None:
        config.accuracy.ignore_label = args.ignore_label
    if args.log_threshold is not None:
        config.log_threshold = validate_log_threshold(args.log_threshold)
    config.validate()
    return config


def drop_ignored(
    predictions: List[np.ndarray], labels: np.ndarray, ignore_label: Optional[int]
) -> Tuple[List[np.ndarray], np.ndarray]:
    """ignore_label の行を除いた予測とラベルを返す。損失レイヤー用。"""

    mats = stack_predictions(predictions)
    label_vec = as_label_vector(labels, mats[0].shape[0])
    if ignore_label is None:
        return mats, label_vec
    keep = label_vec != ignore_label
    if not np.any(keep):
        raise MCLConfigError(f"ラベル {ignore_label} を除くと損失を計算できるサンプルが残りません")
    dropped = int(label_vec.shape[0] - np.count_nonzero(keep))
    if dropped:
        LOGGER.info("ignore_label=%d のサンプル %d 件を損失計算から除外します", ignore_label, dropped)
    return [mat[keep] for mat in mats], label_vec[keep]


def score_mcl(
    predictions: List[np.ndarray], labels: np.ndarray, config: LayerConfig
) -> Dict[str, Any]:
    """勝者割り当て損失と精度指標を計算する。"""

    layer = MCLMultinomialLogisticLoss(config.mcl, config.log_threshold)
    loss_preds, loss_labels = drop_ignored(predictions, labels, config.accuracy.ignore_label)
    losses = layer.forward(loss_preds, loss_labels)
    grads = layer.backward(np.ones_like(losses))
    ensemble = EnsembleAccuracy(config.accuracy, config.log_threshold)
    oracle = OracleAccuracy(config.accuracy, config.log_threshold)
    return {
        "losses": [float(v) for v in losses],
        "assign_counts": [int(v) for v in layer.assign_counts],
        "total_loss": layer.total_loss,
        "grad_l1": [float(np.abs(grad).sum()) for grad in grads],
        "ensemble_accuracy": ensemble.forward(predictions, labels),
        "oracle_accuracy": oracle.forward(predictions, labels),
    }


def score_sequential(
    predictions: List[np.ndarray], labels: np.ndarray, config: LayerConfig
) -> Dict[str, Any]:
    """予測器を段として逐次再重み付け損失を計算する。"""

    stage_preds, stage_labels = drop_ignored(predictions, labels, config.accuracy.ignore_label)
    stages: List[Dict[str, Any]] = []
    prev: Optional[SeqStageOutput] = None
    bar = tqdm(total=len(stage_preds), desc="seq stages", unit="段", disable=not ENABLE_PROGRESS)
    try:
        for prediction in stage_preds:
            layer = SequentialMCLMultinomialLogisticLoss(config.seq_mcl, config.log_threshold)
            if prev is None:
                out = layer.forward(prediction, stage_labels)
            else:
                out = layer.forward(prediction, stage_labels, prev.weights, prev.min_loss)
            grad = layer.backward(1.0)
            prev = out
            stages.append(
                {
                    "loss": out.loss,
                    "weight_sum": float(out.weights.sum()),
                    "weight_max": float(out.weights.max()),
                    "min_loss_mean": float(out.min_loss.mean()),
                    "grad_l1": float(np.abs(grad).sum()),
                }
            )
            bar.update(1)
    finally:
        bar.close()
    return {"sigma": float(config.seq_mcl.sigma), "stages": stages}


def main(argv: Sequence[str] | None = None) -> int:
    global ENABLE_PROGRESS

    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    ENABLE_PROGRESS = bool(args.progress)

    try:
        config = build_config(args)
        if args.npz is not None:
            input_paths = [args.npz]
            predictions, labels = load_prediction_bundle(args.npz)
        else:
            input_paths = list(args.predictions) + [args.labels]
            predictions, labels = load_prediction_files(args.predictions, args.labels)
        mats = stack_predictions(predictions)
        num, classes = mats[0].shape
        LOGGER.info("入力: N=%d P=%d C=%d", num, len(mats), classes)

        report: Dict[str, Any] = {
            "created_at": now_iso(),
            "inputs": [describe_input(path) for path in input_paths],
            "shape": {"num": int(num), "n_pred": len(mats), "classes": int(classes)},
            "config": asdict(config),
        }
        if args.mode in ("mcl", "all"):
            report["mcl"] = score_mcl(predictions, labels, config)
            LOGGER.info(
                "MCL: total_loss=%.6f counts=%s ensemble_acc=%.4f oracle_acc=%.4f",
                report["mcl"]["total_loss"],
                report["mcl"]["assign_counts"],
                report["mcl"]["ensemble_accuracy"],
                report["mcl"]["oracle_accuracy"],
            )
        if args.mode in ("seq", "all"):
            report["sequential"] = score_sequential(predictions, labels, config)
            LOGGER.info(
                "逐次損失: %s",
                ", ".join(f"{stage['loss']:.6f}" for stage in report["sequential"]["stages"]),
            )
        if args.out is not None:
            save_json(args.out, report)
            LOGGER.info("レポートを書き出しました: %s", args.out)
    except (MCLConfigError, InvalidGradientRequest, OSError, ValueError) as exc:
        print(f"エラー: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
