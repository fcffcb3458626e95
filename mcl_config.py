"""MCL 系レイヤーの設定値をまとめたモジュール。

確率の下限値（対数・逆数を取る前のクランプ値）と、各レイヤーの
パラメータを dataclass として定義し、JSON 形式での読み書きを提供する。
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from mcl_common import MCLConfigError

# 対数・逆数を取る前に確率へ適用する下限値。
LOG_THRESHOLD = 1e-20


@dataclass
class MCLParam:
    """勝者割り当て損失の設定。"""

    hard_k: int = 1

    def validate(self, n_pred: Optional[int] = None) -> None:
        if isinstance(self.hard_k, bool) or not isinstance(self.hard_k, int):
            raise MCLConfigError(f"hard_k は整数である必要があります: {self.hard_k!r}")
        if self.hard_k < 1:
            raise MCLConfigError(f"hard_k は 1 以上である必要があります: {self.hard_k}")
        if n_pred is not None and self.hard_k > n_pred:
            raise MCLConfigError(
                f"hard_k ({self.hard_k}) が予測器数 ({n_pred}) を超えています"
            )


@dataclass
class SeqMCLParam:
    """逐次再重み付け損失の設定。"""

    sigma: float = 1.0

    def validate(self) -> None:
        try:
            sigma = float(self.sigma)
        except (TypeError, ValueError) as exc:
            raise MCLConfigError(f"sigma を数値として解釈できません: {self.sigma!r}") from exc
        if not sigma > 0.0:
            raise MCLConfigError(f"sigma は正の値である必要があります: {self.sigma}")


@dataclass
class AccuracyParam:
    """アンサンブル精度 / オラクル精度の設定。"""

    top_k: int = 1
    ignore_label: Optional[int] = None

    def validate(self, class_count: Optional[int] = None) -> None:
        if isinstance(self.top_k, bool) or not isinstance(self.top_k, int) or self.top_k < 1:
            raise MCLConfigError(f"top_k は 1 以上の整数である必要があります: {self.top_k!r}")
        if self.ignore_label is not None and (
            isinstance(self.ignore_label, bool) or not isinstance(self.ignore_label, int)
        ):
            raise MCLConfigError(f"ignore_label は整数である必要があります: {self.ignore_label!r}")
        if class_count is not None and self.top_k > class_count:
            raise MCLConfigError("top_k must be less than or equal to the number of classes.")


@dataclass
class LayerConfig:
    """全レイヤー設定と共通の下限値をまとめたもの。"""

    mcl: MCLParam = field(default_factory=MCLParam)
    seq_mcl: SeqMCLParam = field(default_factory=SeqMCLParam)
    accuracy: AccuracyParam = field(default_factory=AccuracyParam)
    log_threshold: float = LOG_THRESHOLD

    def validate(self) -> None:
        self.mcl.validate()
        self.seq_mcl.validate()
        self.accuracy.validate()
        validate_log_threshold(self.log_threshold)


def validate_log_threshold(value: float) -> float:
    """下限値が (0, 1] に収まっているか検証して float で返す。"""

    try:
        threshold = float(value)
    except (TypeError, ValueError) as exc:
        raise MCLConfigError(f"log_threshold を数値として解釈できません: {value!r}") from exc
    if not (0.0 < threshold <= 1.0):
        raise MCLConfigError(f"log_threshold は (0, 1] の範囲である必要があります: {value}")
    return threshold


_SECTIONS = {
    "mcl": MCLParam,
    "seq_mcl": SeqMCLParam,
    "accuracy": AccuracyParam,
}


def layer_config_from_dict(payload: Dict[str, Any]) -> LayerConfig:
    """辞書から LayerConfig を構築する。未知のキーはエラーとする。"""

    if not isinstance(payload, dict):
        raise MCLConfigError("設定のトップレベルはオブジェクトである必要があります")
    unknown = set(payload) - set(_SECTIONS) - {"log_threshold"}
    if unknown:
        raise MCLConfigError(f"未知の設定キーがあります: {sorted(unknown)}")
    sections: Dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        raw = payload.get(name, {})
        if not isinstance(raw, dict):
            raise MCLConfigError(f"{name} セクションはオブジェクトである必要があります")
        try:
            sections[name] = cls(**raw)
        except TypeError as exc:
            raise MCLConfigError(f"{name} セクションに不正なキーがあります: {exc}") from exc
    config = LayerConfig(
        log_threshold=validate_log_threshold(payload.get("log_threshold", LOG_THRESHOLD)),
        **sections,
    )
    config.validate()
    return config


def load_layer_config(path: Path) -> LayerConfig:
    """JSON ファイルから設定を読み込む。"""

    with path.open("r", encoding="utf-8") as fp:
        try:
            payload = json.load(fp)
        except json.JSONDecodeError as exc:
            raise MCLConfigError(f"{path}: JSON を解釈できません: {exc}") from exc
    return layer_config_from_dict(payload)


def save_layer_config(path: Path, config: LayerConfig) -> None:
    """設定を JSON ファイルへ保存する。"""

    config.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(asdict(config), fp, indent=2, sort_keys=True, ensure_ascii=False)
