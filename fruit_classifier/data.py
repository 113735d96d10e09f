from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence, Tuple

import torch
from PIL import Image
from torch.utils.data import DataLoader, Dataset
from torchvision import transforms

from .errors import DatasetNotFoundError, ImageLoadError, UnknownLabelError

logger = logging.getLogger(__name__)

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class Sample:
    """An image on disk together with the label taken from its parent folder."""

    image_path: str
    label: str


def scan_dataset(root: str | Path) -> list[Sample]:
    """Return one Sample per file found in the label folders directly under ``root``.

    Label folders are scanned non-recursively. Samples are sorted by label and
    file name so that runs over the same tree log identically.
    """
    root = Path(root)
    if not root.is_dir():
        raise DatasetNotFoundError(f"Dataset root '{root}' does not exist or is not a directory.")

    label_dirs = sorted(path for path in root.iterdir() if path.is_dir())
    if not label_dirs:
        raise DatasetNotFoundError(f"Dataset root '{root}' contains no label directories.")

    samples = [
        Sample(image_path=str(file), label=label_dir.name)
        for label_dir in label_dirs
        for file in sorted(label_dir.iterdir())
        if file.is_file()
    ]
    logger.info("Scanned %d samples across %d labels in %s", len(samples), len(label_dirs), root)
    return samples


class LabelCodec:
    """Bijective mapping between label strings and dense indices.

    Indices are assigned in lexicographic label order, so the same label set
    always yields the same encoding regardless of scan order.
    """

    def __init__(self, labels: Iterable[str]) -> None:
        self._labels: Tuple[str, ...] = tuple(sorted(set(labels)))
        self._index = {label: idx for idx, label in enumerate(self._labels)}

    @classmethod
    def from_samples(cls, samples: Iterable[Sample]) -> "LabelCodec":
        return cls(sample.label for sample in samples)

    @classmethod
    def from_list(cls, labels: Sequence[str]) -> "LabelCodec":
        codec = cls(labels)
        if list(codec.labels) != list(labels):
            raise ValueError("Persisted labels must be unique and sorted.")
        return codec

    @property
    def labels(self) -> Tuple[str, ...]:
        return self._labels

    def encode(self, label: str) -> int:
        try:
            return self._index[label]
        except KeyError:
            raise UnknownLabelError(
                f"Label '{label}' was not seen during training.", {"known_labels": list(self._labels)}
            ) from None

    def decode(self, index: int) -> str:
        if not 0 <= index < len(self._labels):
            raise UnknownLabelError(f"Label index {index} is outside the codec range 0..{len(self._labels) - 1}.")
        return self._labels[index]

    def to_list(self) -> list[str]:
        return list(self._labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, label: object) -> bool:
        return label in self._index

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LabelCodec) and self._labels == other._labels

    def __hash__(self) -> int:
        return hash(self._labels)

    def __repr__(self) -> str:
        return f"LabelCodec({list(self._labels)!r})"


def build_encoding(samples: Iterable[Sample]) -> LabelCodec:
    """Build the label codec for a training dataset."""
    return LabelCodec.from_samples(samples)


def build_transforms(
    image_size: int,
    mean: Sequence[float] | None = None,
    std: Sequence[float] | None = None,
) -> transforms.Compose:
    """Return the deterministic preprocessing used for both fit and predict."""
    return transforms.Compose(
        [
            transforms.Resize((image_size, image_size)),
            transforms.ToTensor(),
            transforms.Normalize(mean or IMAGENET_MEAN, std or IMAGENET_STD),
        ]
    )


def load_image(path: str | Path) -> Image.Image:
    """Decode an image file to RGB, raising ImageLoadError on any failure."""
    try:
        with Image.open(path) as image:
            return image.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageLoadError(f"Cannot load image '{path}': {exc}", {"path": str(path)}) from exc


class SampleImageDataset(Dataset):
    """Map-style dataset yielding preprocessed image tensors in sample order."""

    def __init__(self, samples: Sequence[Sample], transform: transforms.Compose) -> None:
        self.samples = list(samples)
        self.transform = transform

    def __len__(self) -> int:
        return len(self.samples)

    def __getitem__(self, index: int) -> torch.Tensor:
        return self.transform(load_image(self.samples[index].image_path))


def create_dataloader(
    samples: Sequence[Sample],
    transform: transforms.Compose,
    batch_size: int,
    num_workers: int = 0,
    pin_memory: bool = False,
) -> DataLoader:
    """Create an unshuffled dataloader so batch order matches sample order."""
    return DataLoader(
        SampleImageDataset(samples, transform),
        batch_size=batch_size,
        shuffle=False,
        num_workers=num_workers,
        pin_memory=pin_memory,
    )
