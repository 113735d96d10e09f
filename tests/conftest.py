"""
Pytest configuration and shared fixtures.

Fixtures build small labeled folder trees of solid-colour PNG images with
Pillow so the whole pipeline can run on CPU without downloading weights.
"""

import random
from pathlib import Path
from typing import Dict

import numpy as np
import pytest
import torch
from PIL import Image

from fruit_classifier.config import TrainingConfig

FRUIT_COLORS = {
    "apple": (200, 30, 30),
    "pear": (150, 200, 60),
    "strawberry": (230, 40, 140),
}


def pytest_configure(config):
    """Register custom markers for test tiers."""
    config.addinivalue_line("markers", "unit: Fast unit tests (CPU only)")
    config.addinivalue_line("markers", "integration: Tests that run the pipeline on small image trees")
    config.addinivalue_line("markers", "slow: Tests that take more than a few seconds")


@pytest.fixture(scope="function", autouse=True)
def reset_random_seeds():
    """Reset random seeds before each test for reproducibility."""
    random.seed(42)
    np.random.seed(42)
    torch.manual_seed(42)


def write_image(path: Path, color, size=(24, 24)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


def build_fruit_tree(root: Path, per_label: int, colors: Dict[str, tuple] = FRUIT_COLORS) -> Path:
    """Create ``root/<label>/<label>_<i>.png`` with slightly varying shades per image."""
    for label, (red, green, blue) in colors.items():
        for index in range(per_label):
            shade = (index * 3) % 20
            color = (min(red + shade, 255), min(green + shade, 255), min(blue + shade, 255))
            write_image(root / label / f"{label}_{index:02d}.png", color)
    return root


def make_config(tmp_path: Path, **overrides) -> TrainingConfig:
    values = dict(
        train_dir=str(tmp_path / "train"),
        test_dir=str(tmp_path / "test"),
        model_dir=str(tmp_path / "models"),
        results_dir=str(tmp_path / "benchmarks"),
        backbone="resnet18",
        pretrained=False,
        image_size=32,
        batch_size=8,
        epochs=5,
        learning_rate=1e-2,
        device="cpu",
    )
    values.update(overrides)
    return TrainingConfig(**values)


@pytest.fixture
def fruit_dirs(tmp_path):
    """Training tree with 10 images per fruit and test tree with 3 per fruit."""
    train_root = build_fruit_tree(tmp_path / "train", per_label=10)
    test_root = build_fruit_tree(tmp_path / "test", per_label=3)
    return train_root, test_root


@pytest.fixture
def fast_config(tmp_path, fruit_dirs):
    return make_config(tmp_path)


@pytest.fixture(scope="module")
def trained(tmp_path_factory):
    """A pipeline, fitted model and test samples shared by a test module."""
    from fruit_classifier.data import scan_dataset
    from fruit_classifier.pipeline import ClassificationPipeline

    root = tmp_path_factory.mktemp("trained")
    build_fruit_tree(root / "train", per_label=10)
    build_fruit_tree(root / "test", per_label=3)
    config = make_config(root)

    pipeline = ClassificationPipeline(config)
    model = pipeline.fit(scan_dataset(config.train_dir))
    test_samples = scan_dataset(config.test_dir)
    return pipeline, model, test_samples, root
