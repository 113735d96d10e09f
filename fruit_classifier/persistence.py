from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import torch

from .data import LabelCodec
from .errors import ModelCorruptError
from .model import FrozenBackbone, LinearClassifier, build_classifier, build_feature_extractor
from .pipeline import FruitModel

logger = logging.getLogger(__name__)

MODEL_FORMAT_VERSION = 1


def _cpu_state(module: torch.nn.Module) -> dict:
    return {key: value.detach().cpu() for key, value in module.state_dict().items()}


def save_model(model: FruitModel, path: str | Path) -> Path:
    """Persist codec, backbone, head and preprocessing to a single archive.

    The archive is written to a temporary file beside ``path`` and renamed into
    place, so an interrupted save never leaves a truncated model behind.
    """
    if not isinstance(model.extractor, FrozenBackbone) or not isinstance(model.classifier, LinearClassifier):
        raise TypeError("Only FrozenBackbone extractors with LinearClassifier heads can be saved.")

    payload = {
        "format_version": MODEL_FORMAT_VERSION,
        "labels": model.codec.to_list(),
        "extractor": {"spec": model.extractor.spec, "state_dict": _cpu_state(model.extractor)},
        "classifier": {"spec": model.classifier.spec, "state_dict": _cpu_state(model.classifier)},
        "preprocess": dict(model.preprocess),
        "schema": dict(model.schema),
    }

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            torch.save(payload, handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Saved model to %s", target)
    return target


def load_model(path: str | Path, device: torch.device | str = "cpu") -> FruitModel:
    """Restore a model written by ``save_model``."""
    source = Path(path)
    if not source.is_file():
        raise ModelCorruptError(f"Model file '{source}' does not exist.")

    try:
        payload = torch.load(source, map_location="cpu", weights_only=True)
    except Exception as exc:
        raise ModelCorruptError(f"Model file '{source}' is unreadable: {exc}") from exc

    if not isinstance(payload, dict) or "format_version" not in payload:
        raise ModelCorruptError(f"Model file '{source}' is not a fruit classifier archive.")
    version = payload["format_version"]
    if version != MODEL_FORMAT_VERSION:
        raise ModelCorruptError(
            f"Model file '{source}' has format version {version}, expected {MODEL_FORMAT_VERSION}.",
            {"found": version, "expected": MODEL_FORMAT_VERSION},
        )

    try:
        codec = LabelCodec.from_list(payload["labels"])

        extractor_spec = payload["extractor"]["spec"]
        extractor = build_feature_extractor(extractor_spec["name"], pretrained=False)
        extractor.load_state_dict(payload["extractor"]["state_dict"])
        extractor.pretrained = bool(extractor_spec["pretrained"])

        classifier_spec = payload["classifier"]["spec"]
        classifier = build_classifier(classifier_spec["in_features"], classifier_spec["num_classes"])
        classifier.load_state_dict(payload["classifier"]["state_dict"])
        classifier.eval()

        preprocess = dict(payload["preprocess"])
        schema = dict(payload["schema"])
    except (KeyError, TypeError, ValueError, AttributeError, RuntimeError) as exc:
        raise ModelCorruptError(f"Model file '{source}' has an invalid layout: {exc}") from exc

    if classifier.num_classes != len(codec):
        raise ModelCorruptError(
            f"Model file '{source}' has {classifier.num_classes} outputs but {len(codec)} labels."
        )

    extractor.to(device)
    classifier.to(device)
    logger.info("Loaded model from %s (%d labels)", source, len(codec))
    return FruitModel(codec=codec, extractor=extractor, classifier=classifier, preprocess=preprocess, schema=schema)
