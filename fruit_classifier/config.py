from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError


@dataclass
class TrainingConfig:
    """Serializable configuration container for training/eval scripts."""

    train_dir: str = "data/train"
    test_dir: str = "data/test"
    model_dir: str = "models"
    results_dir: str = "benchmarks"
    model_name: str = "fruitModel"
    seed: int = 1
    backbone: str = "resnet18"
    pretrained: bool = True
    image_size: int = 224
    dataset_mean: Optional[list[float]] = None
    dataset_std: Optional[list[float]] = None
    batch_size: int = 32
    num_workers: int = 0
    pin_memory: bool = False
    epochs: int = 30
    learning_rate: float = 1e-3
    weight_decay: float = 1e-4
    label_smoothing: float = 0.0
    max_grad_norm: float = 2.0
    device: str = "cuda"

    @property
    def model_path(self) -> Path:
        return Path(self.model_dir) / f"{self.model_name}.pt"

    def ensure_dirs(self) -> None:
        """Create output directories referenced by the config if they do not exist."""
        for folder in (self.model_dir, self.results_dir):
            Path(folder).mkdir(parents=True, exist_ok=True)


def _known_keys() -> set[str]:
    return {field.name for field in fields(TrainingConfig)}


def load_config(path: Optional[str | Path]) -> TrainingConfig:
    """Load configuration values from YAML if provided, otherwise defaults."""
    config_dict: Dict[str, Any] = asdict(TrainingConfig())
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise ConfigError(f"Cannot read config file '{path}': {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file '{path}' is not valid YAML: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file '{path}' must contain a mapping at the top level.")
        unknown = sorted(set(loaded) - _known_keys())
        if unknown:
            raise ConfigError(f"Unknown config keys in '{path}': {', '.join(unknown)}", {"keys": unknown})
        config_dict.update(loaded)
    return TrainingConfig(**config_dict)


def save_config(config: TrainingConfig, path: str | Path) -> None:
    """Persist the configuration to disk as YAML."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(asdict(config), handle, sort_keys=False)


def override_config(config: TrainingConfig, overrides: Dict[str, Any]) -> TrainingConfig:
    """Create a new config using CLI overrides."""
    base = asdict(config)
    for key, value in overrides.items():
        if value is not None and key in base:
            base[key] = value
    return TrainingConfig(**base)
