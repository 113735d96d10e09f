from __future__ import annotations

import logging
from typing import Any, Dict, Protocol, Tuple, runtime_checkable

import torch
from torch import nn
from torch.optim import AdamW
from torch.utils.data import DataLoader, TensorDataset
from torchvision import models
from tqdm import tqdm

logger = logging.getLogger(__name__)

SUPPORTED_BACKBONES = (
    "resnet18",
    "resnet34",
    "resnet50",
    "mobilenet_v3_small",
    "mobilenet_v3_large",
    "efficientnet_b0",
)


@runtime_checkable
class FeatureExtractor(Protocol):
    """Turns a batch of preprocessed images into fixed-length feature vectors."""

    feature_dim: int
    spec: Dict[str, Any]

    def extract(self, images: torch.Tensor) -> torch.Tensor: ...


@runtime_checkable
class Classifier(Protocol):
    """Scores feature vectors with one probability per class."""

    def score(self, features: torch.Tensor) -> torch.Tensor: ...


@runtime_checkable
class ClassifierTrainer(Protocol):
    def train(self, features: torch.Tensor, labels: torch.Tensor, num_classes: int) -> Classifier: ...


def _strip_head(network: nn.Module) -> int:
    """Replace the ImageNet head with identity and return the pooled feature size."""
    fc = getattr(network, "fc", None)
    if isinstance(fc, nn.Linear):
        network.fc = nn.Identity()
        return fc.in_features
    head = getattr(network, "classifier", None)
    if isinstance(head, nn.Sequential):
        first_linear = next(layer for layer in head if isinstance(layer, nn.Linear))
        network.classifier = nn.Identity()
        return first_linear.in_features
    raise ValueError(f"Cannot locate the classification head of {network.__class__.__name__}.")


class FrozenBackbone(nn.Module):
    """Pretrained torchvision network used as a fixed feature extractor."""

    def __init__(self, name: str = "resnet18", pretrained: bool = True) -> None:
        super().__init__()
        if name not in SUPPORTED_BACKBONES:
            raise ValueError(f"Unsupported backbone '{name}'. Choose one of: {', '.join(SUPPORTED_BACKBONES)}.")
        self.name = name
        self.pretrained = pretrained
        self.network = models.get_model(name, weights="DEFAULT" if pretrained else None)
        self.feature_dim = _strip_head(self.network)
        for parameter in self.network.parameters():
            parameter.requires_grad_(False)
        self.eval()

    def train(self, mode: bool = True) -> "FrozenBackbone":
        # Batch-norm statistics stay fixed.
        return super().train(False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.flatten(self.network(x), 1)

    def extract(self, images: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            return self(images)

    @property
    def spec(self) -> Dict[str, Any]:
        return {"name": self.name, "pretrained": self.pretrained, "feature_dim": self.feature_dim}


class LinearClassifier(nn.Module):
    """Single linear layer on top of backbone features."""

    def __init__(self, in_features: int, num_classes: int) -> None:
        super().__init__()
        self.in_features = in_features
        self.num_classes = num_classes
        self.linear = nn.Linear(in_features, num_classes)

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        return self.linear(features)

    def score(self, features: torch.Tensor) -> torch.Tensor:
        self.eval()
        with torch.no_grad():
            return torch.softmax(self(features), dim=1)

    @property
    def spec(self) -> Dict[str, Any]:
        return {"in_features": self.in_features, "num_classes": self.num_classes}


def build_feature_extractor(name: str, pretrained: bool = True) -> FrozenBackbone:
    """Factory that hides the concrete torchvision architecture from callers."""
    return FrozenBackbone(name=name, pretrained=pretrained)


def build_classifier(in_features: int, num_classes: int) -> LinearClassifier:
    return LinearClassifier(in_features=in_features, num_classes=num_classes)


def train_one_epoch(
    model: nn.Module,
    loader: DataLoader,
    optimizer: torch.optim.Optimizer,
    criterion: nn.Module,
    device: torch.device,
    max_grad_norm: float,
) -> Tuple[float, float]:
    model.train()
    running_loss = 0.0
    running_acc = 0.0
    num_batches = 0

    for inputs, targets in loader:
        inputs, targets = inputs.to(device), targets.to(device)
        optimizer.zero_grad(set_to_none=True)
        outputs = model(inputs)
        loss = criterion(outputs, targets)
        loss.backward()
        if max_grad_norm:
            torch.nn.utils.clip_grad_norm_(model.parameters(), max_grad_norm)
        optimizer.step()

        running_loss += loss.item()
        running_acc += (outputs.argmax(dim=1) == targets).float().mean().item()
        num_batches += 1

    return running_loss / num_batches, running_acc / num_batches


class LinearHeadTrainer:
    """Fits a LinearClassifier on precomputed features with AdamW."""

    def __init__(
        self,
        epochs: int = 30,
        learning_rate: float = 1e-3,
        weight_decay: float = 1e-4,
        batch_size: int = 32,
        label_smoothing: float = 0.0,
        max_grad_norm: float = 2.0,
        seed: int = 1,
        device: torch.device | str = "cpu",
    ) -> None:
        self.epochs = epochs
        self.learning_rate = learning_rate
        self.weight_decay = weight_decay
        self.batch_size = batch_size
        self.label_smoothing = label_smoothing
        self.max_grad_norm = max_grad_norm
        self.seed = seed
        self.device = torch.device(device)

    def train(self, features: torch.Tensor, labels: torch.Tensor, num_classes: int) -> LinearClassifier:
        torch.manual_seed(self.seed)
        generator = torch.Generator().manual_seed(self.seed)

        classifier = build_classifier(features.shape[1], num_classes).to(self.device)
        loader = DataLoader(
            TensorDataset(features.cpu(), labels.cpu()),
            batch_size=self.batch_size,
            shuffle=True,
            generator=generator,
        )
        criterion = nn.CrossEntropyLoss(label_smoothing=self.label_smoothing)
        optimizer = AdamW(classifier.parameters(), lr=self.learning_rate, weight_decay=self.weight_decay)

        progress = tqdm(range(1, self.epochs + 1), desc="Train head", leave=False)
        for epoch in progress:
            loss, acc = train_one_epoch(classifier, loader, optimizer, criterion, self.device, self.max_grad_norm)
            progress.set_postfix(loss=f"{loss:.4f}", acc=f"{acc:.4f}")
            logger.debug("Epoch %02d/%d | train loss: %.4f acc: %.4f", epoch, self.epochs, loss, acc)

        classifier.eval()
        return classifier
