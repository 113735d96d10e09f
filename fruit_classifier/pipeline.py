"""
Transfer-learning classification pipeline.

``fit`` encodes labels, decodes every image, runs it through a frozen
pretrained backbone and trains a linear head on the resulting features.
``predict`` reuses the same preprocessing and feature path, then decodes the
arg-max class through the label codec stored inside the model.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import torch
from torch import nn
from tqdm import tqdm

from .config import TrainingConfig
from .data import IMAGENET_MEAN, IMAGENET_STD, LabelCodec, Sample, build_encoding, build_transforms, create_dataloader
from .errors import EmptyDatasetError, TrainingCancelledError
from .model import Classifier, ClassifierTrainer, FeatureExtractor, LinearHeadTrainer, build_feature_extractor
from .utils import get_device, set_seed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionRecord:
    sample: Sample
    predicted_label: str
    scores: Tuple[float, ...]

    @property
    def confidence(self) -> float:
        return max(self.scores)


@dataclass(frozen=True)
class FruitModel:
    """Everything needed to score new images: codec, backbone, head and preprocessing."""

    codec: LabelCodec
    extractor: FeatureExtractor
    classifier: Classifier
    preprocess: Dict[str, Any]
    schema: Dict[str, Any]

    @property
    def labels(self) -> Tuple[str, ...]:
        return self.codec.labels


def build_schema(codec: LabelCodec, extractor_spec: Dict[str, Any], feature_dim: int) -> Dict[str, Any]:
    """Describe the input and output columns of a fitted model."""
    return {
        "input": {"image_path": "str", "label": "str"},
        "extractor": dict(extractor_spec),
        "feature_dim": int(feature_dim),
        "output": {"predicted_label": "str", "scores": len(codec)},
    }


class ClassificationPipeline:
    """Fits and applies a FruitModel.

    The random seed comes from ``config.seed`` so several pipelines can run in
    one process without sharing state. ``extractor`` and ``trainer`` default to
    the torchvision backbone and linear head named by the config.
    """

    def __init__(
        self,
        config: Optional[TrainingConfig] = None,
        extractor: Optional[FeatureExtractor] = None,
        trainer: Optional[ClassifierTrainer] = None,
    ) -> None:
        self.config = config or TrainingConfig()
        self.device = get_device(self.config.device)
        self.extractor = extractor
        self.trainer = trainer

    def _build_trainer(self) -> ClassifierTrainer:
        if self.trainer is not None:
            return self.trainer
        return LinearHeadTrainer(
            epochs=self.config.epochs,
            learning_rate=self.config.learning_rate,
            weight_decay=self.config.weight_decay,
            batch_size=self.config.batch_size,
            label_smoothing=self.config.label_smoothing,
            max_grad_norm=self.config.max_grad_norm,
            seed=self.config.seed,
            device=self.device,
        )

    def _preprocess(self) -> Dict[str, Any]:
        return {
            "image_size": self.config.image_size,
            "mean": list(self.config.dataset_mean or IMAGENET_MEAN),
            "std": list(self.config.dataset_std or IMAGENET_STD),
        }

    def _to_device(self, component: Any) -> None:
        if isinstance(component, nn.Module):
            component.to(self.device)

    def _extract_features(
        self,
        extractor: FeatureExtractor,
        samples: Sequence[Sample],
        preprocess: Dict[str, Any],
        desc: str,
        cancel: Optional[threading.Event] = None,
    ) -> torch.Tensor:
        loader = create_dataloader(
            samples,
            build_transforms(**preprocess),
            batch_size=self.config.batch_size,
            num_workers=self.config.num_workers,
            pin_memory=self.config.pin_memory,
        )
        batches = []
        for images in tqdm(loader, desc=desc, leave=False):
            if cancel is not None and cancel.is_set():
                raise TrainingCancelledError("Training was cancelled during feature extraction.")
            batches.append(extractor.extract(images.to(self.device)).cpu())
        return torch.cat(batches)

    def fit(self, samples: Iterable[Sample], cancel: Optional[threading.Event] = None) -> FruitModel:
        """Train a model on ``samples``. Any unreadable image aborts the whole fit."""
        samples = list(samples)
        if not samples:
            raise EmptyDatasetError("Cannot fit a model on an empty dataset.")

        set_seed(self.config.seed)
        codec = build_encoding(samples)
        extractor = self.extractor
        if extractor is None:
            extractor = build_feature_extractor(self.config.backbone, self.config.pretrained)
        self._to_device(extractor)
        preprocess = self._preprocess()

        logger.info("Fitting on %d samples across %d labels: %s", len(samples), len(codec), ", ".join(codec.labels))
        features = self._extract_features(extractor, samples, preprocess, "Extract train features", cancel)
        labels = torch.tensor([codec.encode(sample.label) for sample in samples], dtype=torch.long)

        if cancel is not None and cancel.is_set():
            raise TrainingCancelledError("Training was cancelled before the classifier head was fitted.")
        classifier = self._build_trainer().train(features, labels, len(codec))

        return FruitModel(
            codec=codec,
            extractor=extractor,
            classifier=classifier,
            preprocess=preprocess,
            schema=build_schema(codec, extractor.spec, features.shape[1]),
        )

    def predict(self, model: FruitModel, samples: Iterable[Sample]) -> list[PredictionRecord]:
        """Score every sample; the returned records keep the input order."""
        samples = list(samples)
        if not samples:
            return []

        self._to_device(model.extractor)
        self._to_device(model.classifier)
        features = self._extract_features(model.extractor, samples, model.preprocess, "Extract features")
        probabilities = model.classifier.score(features.to(self.device)).cpu()

        records = []
        for sample, row in zip(samples, probabilities):
            index = int(row.argmax().item())
            records.append(
                PredictionRecord(
                    sample=sample,
                    predicted_label=model.codec.decode(index),
                    scores=tuple(float(p) for p in row.tolist()),
                )
            )
        return records

    def predict_image(self, model: FruitModel, image_path: str | Path) -> PredictionRecord:
        """Score a single image. Its parent folder name is used as the sample label."""
        path = Path(image_path)
        return self.predict(model, [Sample(image_path=str(path), label=path.parent.name)])[0]
